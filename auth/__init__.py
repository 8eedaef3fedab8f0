"""auth/ -- Credentials, sessions, and permission checks for the portal.

Layer rule: auth/ imports stdlib, third-party libraries, and core/ only.
It does NOT import from api/, tenancy/, or audit/.
api/ imports from auth/, not the other way around.
"""
