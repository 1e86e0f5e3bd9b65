"""core/ -- Settings, domain dataclasses and the error taxonomy.

Layer rule: core/ is the kernel. It imports only stdlib and pydantic, never
another project package.
"""
