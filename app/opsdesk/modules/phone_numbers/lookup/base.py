from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

from app.opsdesk.constants import CARRIER_MOBILE, CARRIER_OTHER, CARRIER_TELECOM, CARRIER_UNICOM

UNKNOWN = "未知"

_CARRIER_ALIASES = {
    "移动": CARRIER_MOBILE,
    "联通": CARRIER_UNICOM,
    "电信": CARRIER_TELECOM,
    CARRIER_MOBILE: CARRIER_MOBILE,
    CARRIER_UNICOM: CARRIER_UNICOM,
    CARRIER_TELECOM: CARRIER_TELECOM,
}


class PhoneLookupError(RuntimeError):
    pass


def normalize_carrier(raw: Any) -> str:
    return _CARRIER_ALIASES.get(str(raw or "").strip(), CARRIER_OTHER)


def build_note(carrier: str | None, province: str | None, city: str | None) -> str:
    """Human-readable note: "中国移动 - 广东深圳", collapsing city when it repeats the province."""
    province = province if province and province != UNKNOWN else ""
    city = city if city and city != UNKNOWN else ""
    if carrier and province and city:
        return f"{carrier} - {province}{'' if city == province else city}"
    if carrier and province:
        return f"{carrier} - {province}"
    return carrier or ""


@dataclass(frozen=True)
class PhoneInfo:
    phone_number: str
    carrier: str
    province: str = UNKNOWN
    city: str = UNKNOWN
    note: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "carrier": self.carrier,
            "province": self.province,
            "city": self.city,
            "note": self.note or build_note(self.carrier, self.province, self.city),
        }


@dataclass(frozen=True)
class LookupResult:
    success: bool
    data: PhoneInfo | None = None
    error: str | None = None
    provider: str | None = None

    def with_provider(self, provider: str) -> "LookupResult":
        return replace(self, provider=provider)

    def to_dict(self, phone_number: str | None = None) -> dict[str, Any]:
        d: dict[str, Any] = {"success": self.success, "provider": self.provider}
        if phone_number is not None:
            d["phoneNumber"] = phone_number
        if self.success and self.data is not None:
            d["data"] = self.data.to_dict()
        else:
            d["error"] = self.error or "查询失败"
        return d


@dataclass
class BatchResult:
    results: dict[str, LookupResult] = field(default_factory=dict)
    provider: str | None = None

    @property
    def total_count(self) -> int:
        return len(self.results)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results.values() if r.success)

    @property
    def failure_count(self) -> int:
        return self.total_count - self.success_count

    @property
    def success(self) -> bool:
        return self.success_count > 0


def failure(error: str, provider: str | None = None) -> LookupResult:
    return LookupResult(success=False, error=error, provider=provider)
