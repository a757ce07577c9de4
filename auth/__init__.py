"""auth/ -- Credential subsystem for knowstack.

Password hashing, access/refresh tokens, claim merging, refresh-token session
bookkeeping and Google OAuth account linking.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
