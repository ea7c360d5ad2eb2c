"""auth/ -- Authentication and account-lifecycle package for AccountGate.

Layer rule: auth/ imports only stdlib, third-party libraries and core.config.
It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
