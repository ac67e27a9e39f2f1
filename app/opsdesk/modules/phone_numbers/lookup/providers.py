from __future__ import annotations

import json
import logging
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Callable

from app.opsdesk.constants import CARRIER_MOBILE, CARRIER_OTHER, CARRIER_TELECOM, CARRIER_UNICOM, is_valid_phone_number
from app.opsdesk.modules.phone_numbers.lookup.base import (
    UNKNOWN,
    BatchResult,
    LookupResult,
    PhoneInfo,
    PhoneLookupError,
    build_note,
    failure,
    normalize_carrier,
)

logger = logging.getLogger(__name__)

INVALID_NUMBER = "无效的手机号码格式"
USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/138.0.0.0 Safari/537.36"
)


def _chunks(items: list[str], size: int) -> list[list[str]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class PhoneProvider:
    """A carrier data source. Lower priority values are tried first."""

    name = "base"
    priority = 100
    can_batch = False
    requires_token = False

    def is_available(self) -> bool:
        return True

    def lookup(self, phone_number: str) -> LookupResult:
        raise NotImplementedError

    def batch_lookup(self, phone_numbers: list[str]) -> BatchResult:
        raise NotImplementedError

    def set_token(self, token: str) -> None:
        return None

    def clear_cache(self) -> None:
        return None


class _Throttled:
    min_interval = 1.0

    def __init__(self, *, sleep: Callable[[float], None] = time.sleep, clock: Callable[[], float] = time.monotonic):
        self._sleep = sleep
        self._clock = clock
        self._last_request = 0.0

    def _throttle(self) -> None:
        elapsed = self._clock() - self._last_request
        if self._last_request and elapsed < self.min_interval:
            self._sleep(self.min_interval - elapsed)
        self._last_request = self._clock()


class ChahaobaProvider(_Throttled, PhoneProvider):
    """Batch lookups against chahaoba.cn; needs a site token."""

    name = "chahaoba"
    priority = 1
    can_batch = True
    requires_token = True

    url = "https://www.chahaoba.cn/page/query_mobile_all_com.php"
    max_batch_size = 20
    timeout_seconds = 30
    min_token_length = 10

    def __init__(self, token: str = "", **kwargs) -> None:
        super().__init__(**kwargs)
        self.token = (token or "").strip()
        self._cache: dict[str, PhoneInfo] = {}

    def set_token(self, token: str) -> None:
        self.token = (token or "").strip()

    def clear_cache(self) -> None:
        self._cache.clear()

    def is_available(self) -> bool:
        return len(self.token) >= self.min_token_length

    def lookup(self, phone_number: str) -> LookupResult:
        if not is_valid_phone_number(phone_number):
            return failure(INVALID_NUMBER, self.name)
        result = self.batch_lookup([phone_number]).results.get(phone_number)
        return result or failure("查询失败", self.name)

    def batch_lookup(self, phone_numbers: list[str]) -> BatchResult:
        batch = BatchResult(provider=self.name)
        if not self.token:
            for n in phone_numbers:
                batch.results[n] = failure("缺少查号Token", self.name)
            return batch

        pending = []
        for n in phone_numbers:
            if not is_valid_phone_number(n):
                batch.results[n] = failure(INVALID_NUMBER, self.name)
            elif n in self._cache:
                batch.results[n] = LookupResult(success=True, data=self._cache[n], provider=self.name)
            else:
                pending.append(n)
        if not pending:
            return batch

        chunks = _chunks(pending, self.max_batch_size)
        for idx, chunk in enumerate(chunks):
            if idx:
                self._sleep(self.min_interval)
            self._throttle()
            try:
                payload = self._post(chunk)
            except PhoneLookupError as e:
                logger.warning("chahaoba batch of %s failed: %s", len(chunk), e)
                for n in chunk:
                    batch.results[n] = failure(str(e), self.name)
                continue
            for n, result in self._parse(payload, chunk).items():
                batch.results[n] = result
                if result.success and result.data is not None:
                    self._cache[n] = result.data
        return batch

    def _post(self, numbers: list[str]) -> dict:
        body = urllib.parse.urlencode({"phone_ranges": "\n".join(numbers), "token": self.token}).encode("utf-8")
        req = urllib.request.Request(self.url, data=body, method="POST")
        req.add_header("Content-Type", "application/x-www-form-urlencoded")
        req.add_header("Accept", "*/*")
        req.add_header("Referer", "https://www.chahaoba.com/")
        req.add_header("User-Agent", USER_AGENT)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                raw = resp.read()
        except urllib.error.HTTPError as e:
            raise PhoneLookupError(f"HTTP {e.code} from chahaoba") from e
        except (urllib.error.URLError, TimeoutError, OSError) as e:
            raise PhoneLookupError(f"chahaoba request failed: {e}") from e
        try:
            data = json.loads(raw.decode("utf-8"))
        except ValueError as e:
            raise PhoneLookupError("Invalid JSON from chahaoba") from e
        if not isinstance(data, dict):
            raise PhoneLookupError("查询服务返回数据格式错误")
        return data

    def _parse(self, data: dict, requested: list[str]) -> dict[str, LookupResult]:
        results: dict[str, LookupResult] = {}
        if not data.get("success"):
            error = str(data.get("error") or "查询服务返回错误")
            if "reCAPTCHA" in error or "验证失败" in error:
                error = "reCAPTCHA验证失败，服务暂时不可用"
            elif "token" in error.lower() or "令牌" in error:
                error = "Token无效或已过期"
            return {n: failure(error, self.name) for n in requested}

        items = data.get("results")
        if not isinstance(items, list):
            return {n: failure("查询服务返回数据格式错误", self.name) for n in requested}

        for item in items:
            if not isinstance(item, dict) or not item.get("query"):
                continue
            number = str(item["query"]).strip()
            carrier = normalize_carrier(item.get("operators"))
            province = str(item.get("province") or UNKNOWN)
            city = str(item.get("city") or UNKNOWN)
            results[number] = LookupResult(
                success=True,
                data=PhoneInfo(number, carrier, province, city, build_note(carrier, province, city)),
                provider=self.name,
            )
        for n in requested:
            results.setdefault(n, failure("未返回查询结果", self.name))
        return results


class ToolLuProvider(_Throttled, PhoneProvider):
    """Single-number lookups against tool.lu, riding on a scraped session cookie."""

    name = "tool.lu"
    priority = 2
    can_batch = False
    requires_token = False

    home_url = "https://tool.lu/mobile/"
    query_url = "https://tool.lu/mobile/ajax.html"
    min_interval = 2.0
    timeout_seconds = 15
    cookie_ttl_seconds = 30 * 60
    max_retries = 2

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self._cache: dict[str, PhoneInfo] = {}
        self._cookie: str | None = None
        self._cookie_expires = 0.0

    def clear_cache(self) -> None:
        self._cache.clear()
        self._cookie = None
        self._cookie_expires = 0.0

    def is_available(self) -> bool:
        req = urllib.request.Request(self.home_url, method="HEAD")
        req.add_header("User-Agent", USER_AGENT)
        try:
            with urllib.request.urlopen(req, timeout=5) as resp:
                return 200 <= resp.status < 400
        except (urllib.error.URLError, TimeoutError, OSError):
            return False

    def lookup(self, phone_number: str) -> LookupResult:
        if not is_valid_phone_number(phone_number):
            return failure(INVALID_NUMBER, self.name)
        cached = self._cache.get(phone_number)
        if cached is not None:
            return LookupResult(success=True, data=cached, provider=self.name)

        self._throttle()
        last_error = "查询运营商信息失败，已达到最大重试次数"
        for attempt in range(1, self.max_retries + 1):
            try:
                info = self._query(phone_number)
                self._cache[phone_number] = info
                return LookupResult(success=True, data=info, provider=self.name)
            except PhoneLookupError as e:
                last_error = str(e)
                logger.warning("tool.lu lookup failed (attempt %s/%s): %s", attempt, self.max_retries, e)
                if attempt < self.max_retries:
                    self._sleep(1.0 * attempt)
        return failure(last_error, self.name)

    def _session_cookie(self) -> str:
        if self._cookie and self._clock() < self._cookie_expires:
            return self._cookie
        req = urllib.request.Request(self.home_url, method="GET")
        req.add_header("Accept", "text/html,application/xhtml+xml")
        req.add_header("User-Agent", USER_AGENT)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                headers = resp.headers.get_all("Set-Cookie") or []
        except (urllib.error.URLError, TimeoutError, OSError) as e:
            logger.warning("tool.lu cookie fetch failed: %s", e)
            return ""
        cookie = "; ".join(h.split(";", 1)[0].strip() for h in headers if h.strip())
        if cookie:
            self._cookie = cookie
            self._cookie_expires = self._clock() + self.cookie_ttl_seconds
        return cookie

    def _query(self, phone_number: str) -> PhoneInfo:
        body = f"mobile={phone_number}&operate=query".encode("utf-8")
        req = urllib.request.Request(self.query_url, data=body, method="POST")
        req.add_header("Content-Type", "application/x-www-form-urlencoded; charset=UTF-8")
        req.add_header("Accept", "application/json, text/javascript, */*; q=0.01")
        req.add_header("X-Requested-With", "XMLHttpRequest")
        req.add_header("Referer", self.home_url)
        req.add_header("User-Agent", USER_AGENT)
        cookie = self._session_cookie()
        if cookie:
            req.add_header("Cookie", cookie)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                raw = resp.read()
        except urllib.error.HTTPError as e:
            if e.code == 403:
                # Stale session; fetch a fresh cookie next time.
                self._cookie = None
                self._cookie_expires = 0.0
            raise PhoneLookupError(f"HTTP {e.code} from tool.lu") from e
        except (urllib.error.URLError, TimeoutError, OSError) as e:
            raise PhoneLookupError(f"tool.lu request failed: {e}") from e

        try:
            data = json.loads(raw.decode("utf-8"))
        except ValueError as e:
            raise PhoneLookupError("Invalid JSON from tool.lu") from e
        if not isinstance(data, dict):
            raise PhoneLookupError("查询失败")
        if not data.get("status"):
            raise PhoneLookupError(str(data.get("message") or "查询失败"))
        text = data.get("text")
        if not isinstance(text, dict):
            raise PhoneLookupError("未返回有效数据")

        carrier = normalize_carrier(text.get("corp"))
        province = str(text.get("province") or UNKNOWN)
        city = str(text.get("city") or UNKNOWN)
        return PhoneInfo(phone_number, carrier, province, city, build_note(carrier, province, city))


CMCC_PREFIXES = (
    "134", "135", "136", "137", "138", "139", "147", "148", "150", "151",
    "152", "157", "158", "159", "172", "178", "182", "183", "184", "187",
    "188", "195", "197", "198",
)
CUCC_PREFIXES = (
    "130", "131", "132", "145", "146", "155", "156", "166", "167", "171",
    "175", "176", "185", "186", "196",
)
CTCC_PREFIXES = (
    "133", "153", "162", "173", "174", "177", "180", "181", "189", "190",
    "191", "193", "199",
)


class OfflineProvider(PhoneProvider):
    """Prefix-table fallback; always available, never knows the region."""

    name = "offline"
    priority = 9
    can_batch = True
    requires_token = False

    def __init__(self) -> None:
        self.prefix_map: dict[str, str] = {}
        for prefixes, carrier in (
            (CMCC_PREFIXES, CARRIER_MOBILE),
            (CUCC_PREFIXES, CARRIER_UNICOM),
            (CTCC_PREFIXES, CARRIER_TELECOM),
        ):
            for p in prefixes:
                self.prefix_map[p] = carrier

    def carrier_for(self, phone_number: str) -> str:
        return self.prefix_map.get(phone_number[:3], CARRIER_OTHER)

    def lookup(self, phone_number: str) -> LookupResult:
        if not is_valid_phone_number(phone_number):
            return failure(INVALID_NUMBER, self.name)
        carrier = self.carrier_for(phone_number)
        return LookupResult(
            success=True,
            data=PhoneInfo(phone_number, carrier, UNKNOWN, UNKNOWN, f"{carrier}（离线识别）"),
            provider=self.name,
        )

    def batch_lookup(self, phone_numbers: list[str]) -> BatchResult:
        return BatchResult(results={n: self.lookup(n) for n in phone_numbers}, provider=self.name)
