"""auth/ -- Identity records, credentials, and the session lifecycle.

Layer rule: auth/ imports from core/ and otp/ plus third-party libraries.
It does NOT import from api/. api/ imports from auth/, not the other way
around.
"""
