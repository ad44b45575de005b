"""auth/ -- Authentication core for the GSO auth service.

Credentials, tokens, device fingerprints, sessions, revocation and the audit
trail. Routing and response shapes live in api/.

Layer rule: auth/ imports only stdlib, third-party libraries and core.config.
It does NOT import from api/. api/ imports from auth/, not the other way around.
  auth/dependencies.py may import from fastapi (for Request) because it is part
  of the FastAPI dependency injection system. auth/origin.py reads the
  starlette Request for the client address.
"""
