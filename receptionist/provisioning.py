from __future__ import annotations

import logging
import secrets
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from receptionist.config import settings
from receptionist.models import VapiConfig
from receptionist.schemas import AssistantOptions
from receptionist.vapi_api import VapiApiClient, VapiApiError, VapiNotFoundError, build_assistant_payload

logger = logging.getLogger(__name__)


class ProvisioningError(RuntimeError):
    def __init__(self, *, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


def generate_vapi_signature() -> str:
    return secrets.token_hex(32)


def get_vapi_config(session: Session, shop_domain: str) -> VapiConfig | None:
    return session.scalars(select(VapiConfig).where(VapiConfig.shop_domain == shop_domain)).first()


def ensure_vapi_config(session: Session, shop_domain: str) -> VapiConfig:
    """Return the shop's config row, creating it with a fresh secret if missing.

    Two concurrent first installs race on the unique shop column; the loser
    rolls back and reads the winner's row.
    """
    config = get_vapi_config(session, shop_domain)
    if config is not None:
        return config

    config = VapiConfig(shop_domain=shop_domain, vapi_signature=generate_vapi_signature())
    session.add(config)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        config = get_vapi_config(session, shop_domain)
        if config is None:
            raise
        return config
    session.refresh(config)
    logger.info("Created vendor config", extra={"shop_domain": shop_domain})
    return config


def _require_config(session: Session, shop_domain: str) -> VapiConfig:
    config = get_vapi_config(session, shop_domain)
    if config is None:
        raise ProvisioningError(message=f"No receptionist configuration for {shop_domain}", status_code=404)
    # Pick up writes from concurrent requests before deciding to create anything upstream.
    session.refresh(config)
    return config


def _assistant_payload(config: VapiConfig, options: AssistantOptions | None) -> dict[str, Any]:
    options = options or AssistantOptions()
    return build_assistant_payload(
        shop_domain=config.shop_domain,
        vapi_signature=config.vapi_signature,
        name=options.name,
        model=options.model,
        temperature=options.temperature,
        voice_provider=options.voice_provider,
        voice_id=options.voice_id,
        first_message=options.first_message,
        end_call_message=options.end_call_message,
        system_prompt=options.system_prompt,
    )


async def provision_assistant(
    session: Session,
    vapi_api: VapiApiClient,
    *,
    shop_domain: str,
    options: AssistantOptions | None = None,
) -> tuple[VapiConfig, bool]:
    """Create the shop's assistant unless one is already recorded.

    Returns the config row and whether a new assistant was created.
    """
    config = ensure_vapi_config(session, shop_domain)
    session.refresh(config)
    if config.assistant_id:
        return config, False

    assistant = await vapi_api.create_assistant(payload=_assistant_payload(config, options))
    assistant_id = assistant.get("id")
    if not isinstance(assistant_id, str) or not assistant_id:
        raise VapiApiError(message="Assistant response is missing id")

    config.assistant_id = assistant_id
    session.commit()
    logger.info("Created assistant", extra={"shop_domain": shop_domain, "assistant_id": assistant_id})
    return config, True


async def update_assistant(
    session: Session,
    vapi_api: VapiApiClient,
    *,
    shop_domain: str,
    options: AssistantOptions,
) -> dict[str, Any]:
    config = _require_config(session, shop_domain)
    if not config.assistant_id:
        raise ProvisioningError(message="Create an assistant before updating it")
    payload = _assistant_payload(config, options)
    return await vapi_api.update_assistant(assistant_id=config.assistant_id, updates=payload)


async def delete_assistant(
    session: Session,
    vapi_api: VapiApiClient,
    *,
    shop_domain: str,
) -> bool:
    """Delete the assistant upstream and clear it locally.

    The local reference is cleared even when the upstream delete fails, so a
    stale id never blocks creating a replacement. Returns False when there was
    nothing to delete.
    """
    config = _require_config(session, shop_domain)
    assistant_id = config.assistant_id
    if not assistant_id:
        return False

    try:
        await vapi_api.delete_assistant(assistant_id=assistant_id)
    except VapiNotFoundError:
        logger.info("Assistant already gone upstream", extra={"shop_domain": shop_domain})
    except VapiApiError:
        logger.warning(
            "Upstream assistant delete failed; clearing local reference",
            extra={"shop_domain": shop_domain, "assistant_id": assistant_id},
            exc_info=True,
        )

    config.assistant_id = None
    session.commit()
    return True


async def provision_phone_number(
    session: Session,
    vapi_api: VapiApiClient,
    *,
    shop_domain: str,
) -> tuple[VapiConfig, bool]:
    config = _require_config(session, shop_domain)
    if config.phone_number_id:
        return config, False
    if not config.assistant_id:
        raise ProvisioningError(message="Create an assistant before provisioning a phone number")

    phone = await vapi_api.create_phone_number(
        provider=settings.VAPI_PHONE_PROVIDER,
        assistant_id=config.assistant_id,
    )
    phone_number_id = phone.get("id")
    if not isinstance(phone_number_id, str) or not phone_number_id:
        raise VapiApiError(message="Phone number response is missing id")

    config.phone_number_id = phone_number_id
    config.phone_number = phone.get("number") or phone.get("sipUri")
    session.commit()
    logger.info(
        "Provisioned phone number",
        extra={"shop_domain": shop_domain, "phone_number_id": phone_number_id},
    )
    return config, True


async def release_phone_number(
    session: Session,
    vapi_api: VapiApiClient,
    *,
    shop_domain: str,
) -> bool:
    config = _require_config(session, shop_domain)
    phone_number_id = config.phone_number_id
    if not phone_number_id:
        return False

    try:
        await vapi_api.delete_phone_number(phone_number_id=phone_number_id)
    except VapiNotFoundError:
        logger.info("Phone number already released upstream", extra={"shop_domain": shop_domain})

    config.phone_number_id = None
    config.phone_number = None
    session.commit()
    return True
