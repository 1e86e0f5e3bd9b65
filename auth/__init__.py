"""auth/ -- OAuth flow, credential storage, refresh and the consumer read path.

Layer rule: auth/ imports from core/, vault/ and cache/.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
