"""auth/ -- Tenant accounts, session tokens and login lockout for subgate.

Layer rule: auth/ imports from core/ and third-party libraries only.
It does NOT import from api/, proxy/ or sync/.
api/ and sync/ import from auth/, not the other way around.
"""
