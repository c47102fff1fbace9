"""
Audit Backend - Users Service with Verified Audit Logging
==========================================================

A users CRUD backend bundled with a secure audit log client:
- PostgreSQL (asyncpg) for the users resource
- FastAPI for the HTTP API
- Ed25519/RSA-PSS signatures over canonical events
- Merkle membership/consistency proofs checked against
  server roots and roots published on Arweave
"""

__version__ = "1.0.0"
