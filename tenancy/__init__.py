"""tenancy/ -- Organizations, projects, memberships and permission rules.

Layer rule: tenancy/ imports only core/ + third-party libraries.
auth/ and api/ import from tenancy/, not the other way around.
"""
