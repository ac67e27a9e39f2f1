from __future__ import annotations

import json
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any


class SmsGatewayError(RuntimeError):
    pass


@dataclass(frozen=True)
class SmsGatewayClient:
    """
    Admin-backend SMS sender. The backend answers {"code": 0, "data": <outId>}
    on success and {"code": <n>, "msg": ...} otherwise.
    """

    send_url: str
    timeout_seconds: int = 30

    @property
    def configured(self) -> bool:
        return bool(self.send_url)

    def send(self, admin_token: str, payload: dict[str, Any]) -> str:
        if not self.configured:
            raise SmsGatewayError("短信网关未配置")
        req = urllib.request.Request(
            self.send_url,
            data=json.dumps(payload, ensure_ascii=False).encode("utf-8"),
            method="POST",
        )
        req.add_header("Authorization", f"Bearer {admin_token}")
        req.add_header("Content-Type", "application/json")
        req.add_header("Accept", "application/json")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                raw = resp.read()
        except urllib.error.HTTPError as e:
            try:
                body = e.read().decode("utf-8", errors="ignore")
            except Exception:
                body = ""
            raise SmsGatewayError(f"短信网关返回 HTTP {e.code}: {body[:300]}") from e
        except (urllib.error.URLError, OSError) as e:
            raise SmsGatewayError(f"无法连接短信网关: {e}") from e

        try:
            j = json.loads(raw.decode("utf-8"))
        except ValueError as e:
            raise SmsGatewayError("短信网关返回了无效的JSON") from e
        if not isinstance(j, dict) or j.get("code") != 0:
            msg = j.get("msg") if isinstance(j, dict) else None
            raise SmsGatewayError(f"短信发送失败: {msg or '管理后台返回错误'}")
        if j.get("data") in (None, ""):
            raise SmsGatewayError("短信网关未返回OutId")
        return str(j["data"])
