"""auth/ -- Authentication, request context and authorization for Goalmap.

Layer rule: auth/ imports only core/, tenancy/ and third-party libraries.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
