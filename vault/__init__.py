"""vault/ -- Per-tenant secret vaults: contract, Azure and local backends, provisioning.

Layer rule: vault/ imports only from core/ plus stdlib and third-party
libraries. auth/ and api/ import from vault/, not the other way around.
"""
