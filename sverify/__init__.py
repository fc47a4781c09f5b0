"""
SVerify - anti-automation admission gate.

Decides whether a client IP may pass a checkpoint page based on a
client-reported environment fingerprint and short-lived tickets:

    from sverify.gate import build_gate

    gate = build_gate()
    result = gate.admit("203.0.113.5", {"isBot": False, "isCleanLoad": True})
    gate.verify("203.0.113.5")   # True for the next 15 minutes

Run the HTTP service with ``sverify serve``.
"""

__version__ = "1.0.0"
