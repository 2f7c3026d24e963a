"""Library circulation core.

Modules:
- catalog: title records and copy availability
- members: member registry
- ledger: subscription periods and stacking
- loans: issue and return
- sweep: daily penalty accrual and subscription expiry
- payments: payment confirmation and the entitlements it grants
- requests: member requests and their approval
- library: the ``Library`` facade that wires them together
"""
from circulation.library import Library

__all__ = ["Library"]
