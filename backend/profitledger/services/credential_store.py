"""Per-client provider credential lookup.

WHAT:
    Reads ProviderCredential rows and returns decrypted credentials.
    lookup() returns None when a client has not connected a provider.

WHY:
    Absence is a normal state (client not connected yet), not an error; the
    orchestrator decides per provider whether that skips or fails a step.

REFERENCES:
    - profitledger/models.py (ProviderCredential)
    - profitledger/security.py (TokenCipher)
    - profitledger/services/sync_orchestrator.py
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from profitledger.models import ProviderCredential
from profitledger.security import TokenCipher

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credential:
    """Decrypted credential for one (client, provider)."""

    provider: str
    account_ref: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


class CredentialStore:
    """Credential lookups backed by the provider_credentials table."""

    def __init__(self, db: Session, cipher: Optional[TokenCipher] = None):
        self.db = db
        self.cipher = cipher

    def _decrypt(self, ciphertext: Optional[str], context: str) -> Optional[str]:
        if not ciphertext:
            return None
        if self.cipher is None:
            raise RuntimeError("TOKEN_ENCRYPTION_KEY is required to read stored provider tokens")
        return self.cipher.decrypt(ciphertext, context=context)

    def lookup(self, client_id: str, provider: str) -> Optional[Credential]:
        """Active credential for the client/provider, or None when not connected."""
        row = (
            self.db.query(ProviderCredential)
            .filter(
                ProviderCredential.client_id == client_id,
                ProviderCredential.provider == provider,
                ProviderCredential.is_active.is_(True),
            )
            .first()
        )
        if row is None or not row.account_ref:
            logger.info("[CREDENTIALS] %s not connected for client %s", provider, client_id)
            return None

        context = f"{provider}:{client_id}"
        return Credential(
            provider=provider,
            account_ref=row.account_ref,
            access_token=self._decrypt(row.access_token_enc, context),
            refresh_token=self._decrypt(row.refresh_token_enc, context),
            extra=dict(row.extra or {}),
        )

    def save(
        self,
        client_id: str,
        provider: str,
        account_ref: str,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> ProviderCredential:
        """Create or replace the credential for (client, provider)."""
        context = f"{provider}:{client_id}"
        if (access_token or refresh_token) and self.cipher is None:
            raise RuntimeError("TOKEN_ENCRYPTION_KEY is required to store provider tokens")

        row = (
            self.db.query(ProviderCredential)
            .filter(ProviderCredential.client_id == client_id, ProviderCredential.provider == provider)
            .first()
        )
        if row is None:
            row = ProviderCredential(client_id=client_id, provider=provider)
            self.db.add(row)

        row.account_ref = account_ref
        row.access_token_enc = self.cipher.encrypt(access_token, context=context) if access_token else None
        row.refresh_token_enc = self.cipher.encrypt(refresh_token, context=context) if refresh_token else None
        row.extra = extra or {}
        row.is_active = True
        self.db.commit()
        return row

    def clients_with(self, provider: str) -> List[str]:
        """Client ids with an active credential for `provider`."""
        rows = (
            self.db.query(ProviderCredential.client_id)
            .filter(ProviderCredential.provider == provider, ProviderCredential.is_active.is_(True))
            .order_by(ProviderCredential.client_id)
            .all()
        )
        return [r[0] for r in rows]
