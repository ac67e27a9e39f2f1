from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.opsdesk.models import Base

STATUS_SENDING = "发送中"
STATUS_SENDING_STOPPED = "发送中(已停止查询)"
STATUS_DELIVERED = "已送达"
STATUS_FAILED = "发送失败"
PENDING_STATUSES = (STATUS_SENDING, STATUS_SENDING_STOPPED)
MAX_RESEND_ATTEMPTS = 3


class SmsRecord(Base):
    __tablename__ = "sms_records"
    __table_args__ = (
        Index("idx_sms_records_phone", "phone_number"),
        Index("idx_sms_records_status", "status"),
        Index("idx_sms_records_created", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    out_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    phone_number: Mapped[str] = mapped_column(String(20), nullable=False)
    carrier: Mapped[str | None] = mapped_column(String(32), nullable=True)
    phone_note: Mapped[str | None] = mapped_column(String(255), nullable=True)
    template_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    template_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    template_params: Mapped[str | None] = mapped_column(Text, nullable=True)  # JSON
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Gateway-reported timestamps, stored as given.
    send_date: Mapped[str | None] = mapped_column(String(32), nullable=True)
    receive_date: Mapped[str | None] = mapped_column(String(32), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=STATUS_SENDING)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
