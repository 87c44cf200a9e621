from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from receptionist.enums import GdprRequestStatusEnum


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ShopSession(Base):
    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(length=255), primary_key=True)
    shop_domain: Mapped[str] = mapped_column(String(length=255), nullable=False, index=True)
    access_token: Mapped[str] = mapped_column(Text, nullable=False, default="")
    scope: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_online: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    expires: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class VapiConfig(Base):
    __tablename__ = "vapi_configs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shop_domain: Mapped[str] = mapped_column(String(length=255), unique=True, nullable=False, index=True)
    vapi_signature: Mapped[str] = mapped_column(String(length=128), unique=True, nullable=False, index=True)
    assistant_id: Mapped[str | None] = mapped_column(String(length=128), unique=True, nullable=True)
    phone_number: Mapped[str | None] = mapped_column(String(length=32), nullable=True)
    phone_number_id: Mapped[str | None] = mapped_column(String(length=128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class CallLog(Base):
    __tablename__ = "call_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    call_id: Mapped[str] = mapped_column(String(length=128), unique=True, nullable=False)
    shop_domain: Mapped[str] = mapped_column(String(length=255), nullable=False, index=True)
    phone_number: Mapped[str | None] = mapped_column(String(length=32), nullable=True)
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    transcript: Mapped[str | None] = mapped_column(Text, nullable=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class GdprRequest(Base):
    __tablename__ = "gdpr_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shop_domain: Mapped[str] = mapped_column(String(length=255), nullable=False, index=True)
    request_type: Mapped[str] = mapped_column(String(length=64), nullable=False)
    status: Mapped[str] = mapped_column(
        String(length=32), nullable=False, default=GdprRequestStatusEnum.pending.value
    )
    customer_id: Mapped[str | None] = mapped_column(String(length=64), nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String(length=320), nullable=True)
    customer_phone: Mapped[str | None] = mapped_column(String(length=32), nullable=True)
    orders_requested: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload: Mapped[str | None] = mapped_column(Text, nullable=True)
    export_payload: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class OAuthState(Base):
    __tablename__ = "oauth_states"

    state: Mapped[str] = mapped_column(String(length=128), primary_key=True)
    shop_domain: Mapped[str] = mapped_column(String(length=255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
