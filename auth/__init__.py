"""auth/ -- Authentication and session trust core for SessionTrust.

Layer rule: auth/ imports only stdlib + third-party libraries, plus the
Settings type from core/ for from_settings() constructors.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
