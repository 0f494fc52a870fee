"""auth/ -- Authentication and authorization core for the backoffice.

Layer rule: auth/ imports from core/ and audit/ (through AuditRecorder) and
from cache/ only for the PermissionCache protocol. It does NOT import from
api/. api/ imports from auth/, not the other way around.
"""
