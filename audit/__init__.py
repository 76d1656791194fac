"""audit/ -- Append-only audit trail for security-relevant events.

Layer rule: audit/ imports only stdlib, third-party libraries and core/.
auth/ and api/ import from audit/, not the other way around.
"""
