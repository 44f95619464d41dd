"""auth/ -- Identity core for Gatekeeper: tokens, OAuth linking, roles, SSO.

Layer rule: auth/ imports only stdlib + third-party libraries, plus
core.config for type hints. It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
