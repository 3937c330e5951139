"""
txgate - Policy-gated transaction firewall.

Every proposed call is approved by a decision endpoint before it is
broadcast. The local firewall evaluates the consumer's active policies
(allowlists, truth-table combinations, single-use approved calls) and
denies by default.

It provides:
- A firewall registry with admin-gated policy attachment
- A Policy Decision Client with pluggable endpoints
- A Transaction Executor with per-signer serialisation and idempotency
- A full audit trail in SQLite

Example usage:
    $ txgate evaluate --from 0x... --to 0x... -c txgate.yaml
    $ txgate submit --from 0x... --to 0x... --data 0x... -c txgate.yaml
    $ txgate history
"""

__version__ = "0.1.0"
__author__ = "txgate Contributors"

__all__ = [
    "__version__",
    "__author__",
]
