"""Push API (WhatsApp Cloud API) sender."""

import re
from typing import Optional

import httpx

from switchboard.config import settings
from switchboard.logging_config import get_logger
from switchboard.models import TenantCredential
from switchboard.services.alert_service import alert_error
from switchboard.services.channel_errors import ChannelSendError, send_error_from_httpx

logger = get_logger("cloud_api_service")


MEDIA_SEND_TYPES = ("image", "document", "audio", "video", "sticker")


def format_recipient(address: str) -> str:
    """Digits only, leading zeros stripped."""
    return re.sub(r"[^0-9]", "", address or "").lstrip("0")


def messages_url(credential: TenantCredential) -> str:
    version = credential.api_version or settings.graph_api_version
    return f"{settings.graph_api_base_url.rstrip('/')}/{version}/{credential.phone_number_id}/messages"


def media_object(media_ref: str, media_type: str, caption: Optional[str] = None) -> dict:
    """A URL is sent as ``link``, anything else as an uploaded media ``id``."""
    key = "link" if media_ref.startswith(("http://", "https://")) else "id"
    media = {key: media_ref}
    # Audio and stickers carry no caption.
    if caption and media_type in ("image", "document", "video"):
        media["caption"] = caption
    return media


async def send_text(
    credential: TenantCredential,
    to: str,
    body: str,
    *,
    client: Optional[httpx.AsyncClient] = None,
) -> Optional[str]:
    """Send a text message and return the network message id.

    Raises ChannelSendError, classified retryable or not.
    """
    recipient = _recipient_or_raise(to)
    payload = {
        "messaging_product": "whatsapp",
        "to": recipient,
        "type": "text",
        "text": {"body": body},
    }
    return await _post_message(credential, recipient, payload, client=client)


async def send_media(
    credential: TenantCredential,
    to: str,
    media_ref: str,
    *,
    media_type: str = "image",
    caption: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> Optional[str]:
    """Send an image, document, audio, video or sticker by link or media id."""
    recipient = _recipient_or_raise(to)
    if media_type not in MEDIA_SEND_TYPES:
        raise ChannelSendError(f"Unsupported media type: {media_type!r}", retryable=False)
    if not media_ref:
        raise ChannelSendError("Missing media reference", retryable=False)

    payload = {
        "messaging_product": "whatsapp",
        "to": recipient,
        "type": media_type,
        media_type: media_object(media_ref, media_type, caption),
    }
    return await _post_message(credential, recipient, payload, client=client)


def _recipient_or_raise(to: str) -> str:
    recipient = format_recipient(to)
    if not recipient:
        raise ChannelSendError(f"Invalid recipient: {to!r}", retryable=False)
    return recipient


async def _post_message(
    credential: TenantCredential,
    recipient: str,
    payload: dict,
    *,
    client: Optional[httpx.AsyncClient] = None,
) -> Optional[str]:
    headers = {"Authorization": f"Bearer {credential.access_token}"}

    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=settings.graph_api_timeout_seconds)
    try:
        response = await client.post(messages_url(credential), json=payload, headers=headers)
        logger.info(
            f"Cloud API response: status={response.status_code}, to={recipient}, body={response.text[:200]}"
        )
        response.raise_for_status()
    except httpx.HTTPError as e:
        error = send_error_from_httpx(e, channel="Cloud API")
        if error.status_code in (401, 403):
            await alert_error(
                "Cloud API credentials rejected",
                {"phone_number_id": credential.phone_number_id, "status": error.status_code},
            )
        raise error from e
    finally:
        if owns_client:
            await client.aclose()

    # The send is accepted at this point; a body we cannot read only costs the id.
    try:
        data = response.json()
    except ValueError:
        logger.warning(f"Cloud API accepted send to {recipient} with a non-JSON body")
        return None
    messages = data.get("messages") if isinstance(data, dict) else None
    if not isinstance(messages, list) or not messages or not isinstance(messages[0], dict):
        return None
    return messages[0].get("id")
