"""api/ -- FastAPI application over the credential services.

Layer rule: api/ may import from every other package; nothing imports from api/.
"""
