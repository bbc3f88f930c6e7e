"""
ZSA issuance engine

Issues and tracks custom shielded assets:
  - crypto.keys: seed -> issuance key -> issuer identifier
  - crypto.asset_id: content-addressed asset identifiers
  - ledger.issuance: token lifecycle, supply accounting, history
  - runtime: durable key record and token stores
  - issuer.tx_tool: boundary to the external transaction tool
"""

__version__ = "0.1.0"
