"""mail/ -- Outbound mail capability (SMTP).

Layer rule: mail/ imports only stdlib and core/.
"""
