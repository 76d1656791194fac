"""auth/ -- Identity and access control for the restaurant application.

Layer rule: auth/ imports only stdlib, third-party libraries, core/, audit/
and mail/. api/ imports from auth/, not the other way around.
"""
