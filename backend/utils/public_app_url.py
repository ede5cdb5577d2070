"""
Canonical public frontend base URL for contract links.
Use build_contract_link() / build_verification_url() for every link handed to a client.
No other code should build frontend links directly.
"""
import os
import logging

logger = logging.getLogger(__name__)


def get_public_app_url(for_share_links: bool = False) -> str:
    """
    Return normalized public frontend base URL (no trailing slash).
    Fallback order: FRONTEND_PUBLIC_URL, PUBLIC_APP_URL, FRONTEND_URL, RENDER_EXTERNAL_URL.

    Rules:
    - Result is stripped and trailing slash removed.
    - Non-localhost http URLs are upgraded to https.
    - If for_share_links=True and the only available URL is localhost in production,
      raises ValueError so a client never receives a broken signing link.
    """
    raw = (
        (os.getenv("FRONTEND_PUBLIC_URL") or "").strip()
        or (os.getenv("PUBLIC_APP_URL") or "").strip()
        or (os.getenv("FRONTEND_URL") or "").strip()
        or (os.getenv("RENDER_EXTERNAL_URL") or "").strip()
    )
    raw = raw.rstrip("/")
    if not raw:
        raw = "http://localhost:3000"
    if raw.startswith("http://") and "localhost" not in raw:
        raw = "https://" + raw.split("://", 1)[1]
    if for_share_links and "localhost" in raw.lower():
        env = (os.getenv("ENVIRONMENT") or os.getenv("ENV") or "").strip().lower()
        if env in ("production", "prod"):
            raise ValueError(
                "FRONTEND_PUBLIC_URL (or PUBLIC_APP_URL) must be your public frontend URL in production (no localhost). "
                "Set FRONTEND_PUBLIC_URL=https://<your-frontend-domain>"
            )
        logger.warning("get_public_app_url(for_share_links=True): using localhost; set FRONTEND_PUBLIC_URL for production.")
    return raw


def build_contract_link(token: str) -> str:
    """Public signing link handed to the client out-of-band."""
    return f"{get_public_app_url(for_share_links=True)}/contract/{token}"


def build_verification_url(token: str) -> str:
    """URL encoded in the authenticity stamp of a signed contract."""
    return f"{get_public_app_url(for_share_links=True)}/verify/{token}"
