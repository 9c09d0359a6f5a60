# paypost/erid.py
"""Advertising identifier (ERID) resolution.

An ERID is either supplied by the advertiser, issued by the compliance
authority (ORD) on registration, or, when the authority cannot be reached
or answers with something unusable, synthesized locally. Publication is
never blocked on the authority: `ErdResolver.resolve` always returns a
valid identifier.
"""
import logging
import re
import secrets
import string
import time
from dataclasses import dataclass
from typing import Optional, Union

import httpx

from .errors import ComplianceUnavailable
from .models import Order, to_minor_units

log = logging.getLogger(__name__)

ERID_RE = re.compile(r"^[A-Z0-9-]{8,}$", re.IGNORECASE)
ERID_MARKER_RE = re.compile(r"ERID:[ \t]*[\w-]*", re.IGNORECASE)
DISCLOSURE = "Реклама"
MAX_AD_TEXT = 900  # VK ads API limit

_BASE36 = string.digits + string.ascii_uppercase


def validate_erid(value) -> bool:
    if not value or not isinstance(value, str):
        return False
    return bool(ERID_RE.match(value.strip()))


def format_post_with_erid(text: str, erid: str) -> str:
    """Prefix the disclosure block, or swap the ERID in an existing one."""
    if ERID_MARKER_RE.search(text):
        return ERID_MARKER_RE.sub(lambda _: f"ERID: {erid}", text, count=1)
    return f"{DISCLOSURE}\nERID: {erid}\n\n{text}"


def _base36(n: int) -> str:
    n = abs(n)
    if n == 0:
        return "0"
    digits = []
    while n:
        n, rem = divmod(n, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_fallback_erid(group_id: int, user_id: Optional[int] = None) -> str:
    # ERID-{millis}-{group}-{user}-{random}, e.g. ERID-1705312200000-000WXY-0000RS-G7H8I9
    millis = time.time_ns() // 1_000_000
    group = _base36(group_id).rjust(6, "0")
    user = _base36(user_id or 0).rjust(6, "0")
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"ERID-{millis}-{group}-{user}-{suffix}"


@dataclass(frozen=True)
class Custom:
    erid: str


@dataclass(frozen=True)
class Registered:
    erid: str


@dataclass(frozen=True)
class Fallback:
    erid: str
    reason: str


Resolution = Union[Custom, Registered, Fallback]


class OrdClient:
    """Client for the VK ads registration API acting as the ORD."""

    def __init__(self, http: httpx.AsyncClient, settings):
        self.http = http
        self.settings = settings

    def _token(self):
        if not self.settings.ord_token:
            raise ComplianceUnavailable("ORD token is not configured")
        return self.settings.ord_token

    async def register(self, text: str, group_id: int, user_id: Optional[int], price) -> str:
        if self.settings.ord_type != "vk":
            raise ComplianceUnavailable(f"ORD type {self.settings.ord_type!r} is not supported")
        params = {
            "access_token": self._token(),
            "ad_format": 1,  # image and text
            "ad_text": text[:MAX_AD_TEXT],
            "ad_site": f"vk.com/club{abs(group_id)}",
            "ad_cost": to_minor_units(price),
            "ad_cost_type": 1,  # fixed cost
            "v": self.settings.vk_api_version,
        }
        try:
            resp = await self.http.get(self.settings.ord_api_url, params=params)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as e:
            raise ComplianceUnavailable(f"ORD request failed: {e!r}") from e
        except ValueError as e:
            raise ComplianceUnavailable("ORD returned a non-JSON body") from e

        if not isinstance(data, dict):
            raise ComplianceUnavailable("ORD returned an unexpected payload")
        if data.get("error"):
            err = data["error"]
            if isinstance(err, dict):
                raise ComplianceUnavailable(
                    f"ORD error {err.get('error_code')}: {err.get('error_msg')}"
                )
            raise ComplianceUnavailable(f"ORD error: {err}")

        body = data.get("response")
        if not isinstance(body, dict):
            raise ComplianceUnavailable("ORD response has no body")
        erid = body.get("erid") or body.get("ad_id")
        if erid is None or not validate_erid(str(erid)):
            raise ComplianceUnavailable(f"ORD returned no usable ERID: {erid!r}")
        return str(erid).strip()

    async def get_ad_info(self, erid: str) -> Optional[dict]:
        """Reporting lookup; None when the ad cannot be fetched."""
        url = self.settings.vk_api_url.rstrip("/") + "/ads.getAds"
        try:
            resp = await self.http.get(url, params={
                "access_token": self._token(),
                "ad_ids": erid,
                "v": self.settings.vk_api_version,
            })
            data = resp.json()
        except (httpx.HTTPError, ValueError, ComplianceUnavailable) as e:
            log.warning("ad info lookup failed for %s: %r", erid, e)
            return None
        if not isinstance(data, dict) or data.get("error"):
            log.warning("ad info lookup rejected for %s: %s", erid,
                        data.get("error") if isinstance(data, dict) else data)
            return None
        return data.get("response")


class ErdResolver:
    def __init__(self, ord_client: OrdClient):
        self.ord = ord_client

    async def resolve_detailed(self, order: Order) -> Resolution:
        if order.custom_erid and validate_erid(order.custom_erid):
            return Custom(order.custom_erid)
        try:
            erid = await self.ord.register(order.text, order.group_id, order.user_id, order.price)
            return Registered(erid)
        except ComplianceUnavailable as e:
            reason = str(e)
        except Exception as e:
            # anything unexpected from the authority path still degrades to a local ERID
            log.exception("unexpected ORD failure for order %s", order.id)
            reason = repr(e)
        return Fallback(generate_fallback_erid(order.group_id, order.user_id), reason)

    async def resolve(self, order: Order) -> str:
        result = await self.resolve_detailed(order)
        if isinstance(result, Custom):
            log.info("order %s: using custom ERID %s", order.id, result.erid)
        elif isinstance(result, Registered):
            log.info("order %s: ERID %s issued by ORD", order.id, result.erid)
        else:
            log.warning("order %s: ORD registration degraded (%s), generated ERID %s",
                        order.id, result.reason, result.erid)
        return result.erid
