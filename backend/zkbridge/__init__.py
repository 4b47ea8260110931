"""
ZK Approval Bridge.

Mints a public-ledger token for an asset once three parties have approved
it on a permissioned ledger, linking the two with a zero-knowledge proof
that reveals only the asset id.
"""
