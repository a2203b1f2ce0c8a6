"""auth/ -- Token authentication and authorization package for Inkwell.

Layer rule: auth/ imports only stdlib + third-party libraries + core/.
It does NOT import from api/. api/ imports from auth/, not the other way around.
HTTP status codes never appear in auth/; api/main.py maps AuthErrorKind to status.
"""
