"""
access.py - Administrative Capability

An AdminCap is an unguessable credential handed to the operator at setup.
CapabilityAuthorizer accepts exactly that credential.

Example:
    cap = AdminCap.issue()
    ledger = CurveLedger("larry", CapabilityAuthorizer(cap), wallets)
    ledger.set_fee_recipient(cap, "treasury")
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any
import hmac
import secrets


@dataclass(frozen=True, slots=True)
class AdminCap:
    token: str

    @classmethod
    def issue(cls) -> AdminCap:
        return cls(secrets.token_hex(32))

    def __repr__(self) -> str:
        return "AdminCap(<redacted>)"


class CapabilityAuthorizer:
    """Verifies that a credential is the AdminCap this authorizer was built with."""

    def __init__(self, cap: AdminCap):
        self._token = cap.token

    def verify(self, credential: Any) -> bool:
        if not isinstance(credential, AdminCap):
            return False
        return hmac.compare_digest(credential.token, self._token)
