from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx

from storefront_auth.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ExternalIdentity:
    provider_uid: str
    email: str
    name: str
    picture: Optional[str] = None
    email_verified: bool = False


class GoogleIdentityVerifier:
    """Validates Google ID tokens against the tokeninfo endpoint.

    Returns ``None`` for every rejection (bad token, wrong audience, upstream
    failure) so the caller can answer with a single 401.
    """

    provider = "google"

    def __init__(
        self,
        tokeninfo_url: str,
        client_id: Optional[str] = None,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.tokeninfo_url = tokeninfo_url
        self.client_id = client_id
        self.timeout = timeout
        self._transport = transport

    async def verify(self, credential: str) -> Optional[ExternalIdentity]:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self._transport
            ) as client:
                response = await client.get(
                    self.tokeninfo_url, params={"id_token": credential}
                )
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "external_identity_rejected",
                provider=self.provider,
                status_code=exc.response.status_code,
            )
            return None
        except httpx.HTTPError as exc:
            logger.error(
                "external_identity_unreachable", provider=self.provider, error=str(exc)
            )
            return None
        except ValueError as exc:
            logger.error(
                "external_identity_parse_error", provider=self.provider, error=str(exc)
            )
            return None

        if not isinstance(payload, dict):
            return None
        if self.client_id and payload.get("aud") != self.client_id:
            logger.warning("external_identity_audience_mismatch", provider=self.provider)
            return None
        subject = payload.get("sub")
        email = payload.get("email")
        if not subject or not email:
            logger.warning("external_identity_incomplete", provider=self.provider)
            return None
        verified = str(payload.get("email_verified", "")).lower() == "true"
        return ExternalIdentity(
            provider_uid=str(subject),
            email=str(email).strip().lower(),
            name=str(payload.get("name") or email.split("@")[0]),
            picture=payload.get("picture"),
            email_verified=verified,
        )
