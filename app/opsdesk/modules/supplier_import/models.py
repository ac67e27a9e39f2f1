from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.opsdesk.models import Base

IMPORT_STATUSES = ("processing", "completed", "failed")
DEFAULT_LANGUAGE = "en-US"


class SellerCompany(Base):
    __tablename__ = "seller_company"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    company_no: Mapped[str | None] = mapped_column(String(64), nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    country: Mapped[str | None] = mapped_column(String(64), nullable=True)
    province: Mapped[str | None] = mapped_column(String(64), nullable=True)
    city: Mapped[str | None] = mapped_column(String(64), nullable=True)
    county: Mapped[str | None] = mapped_column(String(64), nullable=True)
    address: Mapped[str | None] = mapped_column(String(500), nullable=True)
    business_scope: Mapped[str | None] = mapped_column(Text, nullable=True)
    contact_person: Mapped[str | None] = mapped_column(String(64), nullable=True)
    contact_person_title: Mapped[str | None] = mapped_column(String(64), nullable=True)
    mobile: Mapped[str | None] = mapped_column(String(32), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    email: Mapped[str | None] = mapped_column(String(128), nullable=True)
    intro: Mapped[str | None] = mapped_column(Text, nullable=True)
    whats_app: Mapped[str | None] = mapped_column(String(32), nullable=True)
    fax: Mapped[str | None] = mapped_column(String(32), nullable=True)
    postal_code: Mapped[str | None] = mapped_column(String(16), nullable=True)
    company_birth: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_verified: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    homepage: Mapped[str | None] = mapped_column(String(255), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    translations: Mapped[list["SellerCompanyLang"]] = relationship(
        back_populates="company",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class SellerCompanyLang(Base):
    __tablename__ = "seller_company_lang"
    __table_args__ = (
        UniqueConstraint("company_id", "language_code", name="uq_seller_company_lang"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("seller_company.company_id", ondelete="CASCADE"), nullable=False
    )
    language_code: Mapped[str] = mapped_column(String(16), nullable=False, default=DEFAULT_LANGUAGE)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    province: Mapped[str | None] = mapped_column(String(64), nullable=True)
    city: Mapped[str | None] = mapped_column(String(64), nullable=True)
    county: Mapped[str | None] = mapped_column(String(64), nullable=True)
    address: Mapped[str | None] = mapped_column(String(500), nullable=True)
    business_scope: Mapped[str | None] = mapped_column(Text, nullable=True)
    contact_person: Mapped[str | None] = mapped_column(String(64), nullable=True)
    contact_person_title: Mapped[str | None] = mapped_column(String(64), nullable=True)
    intro: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    company: Mapped[SellerCompany] = relationship(back_populates="translations")


class ImportRecord(Base):
    __tablename__ = "import_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    import_date: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    total_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    duration_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="processing")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    failed_companies: Mapped[list["FailedCompany"]] = relationship(
        back_populates="import_record",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class FailedCompany(Base):
    """A company row that could not be written, kept verbatim for retry."""

    __tablename__ = "failed_companies"
    __table_args__ = (
        Index("idx_failed_companies_record", "import_record_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    import_record_id: Mapped[int] = mapped_column(ForeignKey("import_records.id", ondelete="CASCADE"), nullable=False)
    company_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    company_no: Mapped[str | None] = mapped_column(Text, nullable=True)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    name_en: Mapped[str | None] = mapped_column(Text, nullable=True)
    country: Mapped[str | None] = mapped_column(Text, nullable=True)
    province: Mapped[str | None] = mapped_column(Text, nullable=True)
    province_en: Mapped[str | None] = mapped_column(Text, nullable=True)
    city: Mapped[str | None] = mapped_column(Text, nullable=True)
    city_en: Mapped[str | None] = mapped_column(Text, nullable=True)
    county: Mapped[str | None] = mapped_column(Text, nullable=True)
    county_en: Mapped[str | None] = mapped_column(Text, nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    address_en: Mapped[str | None] = mapped_column(Text, nullable=True)
    business_scope: Mapped[str | None] = mapped_column(Text, nullable=True)
    business_scope_en: Mapped[str | None] = mapped_column(Text, nullable=True)
    contact_person: Mapped[str | None] = mapped_column(Text, nullable=True)
    contact_person_en: Mapped[str | None] = mapped_column(Text, nullable=True)
    contact_person_title: Mapped[str | None] = mapped_column(Text, nullable=True)
    contact_person_title_en: Mapped[str | None] = mapped_column(Text, nullable=True)
    mobile: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone: Mapped[str | None] = mapped_column(Text, nullable=True)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    intro: Mapped[str | None] = mapped_column(Text, nullable=True)
    intro_en: Mapped[str | None] = mapped_column(Text, nullable=True)
    whats_app: Mapped[str | None] = mapped_column(Text, nullable=True)
    fax: Mapped[str | None] = mapped_column(Text, nullable=True)
    postal_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    company_birth: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_verified: Mapped[int | None] = mapped_column(Integer, nullable=True)
    homepage: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    import_record: Mapped[ImportRecord] = relationship(back_populates="failed_companies")
