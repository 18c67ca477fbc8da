"""auth/ -- Authentication and session lifecycle core for retail-auth.

Layer rule: auth/ imports stdlib, third-party libraries and core/ (the
kernel). It does NOT import from api/. api/ imports from auth/, not the
other way around; auth/dependencies.py is the only module that knows about
FastAPI.
"""
