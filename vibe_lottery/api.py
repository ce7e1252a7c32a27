"""HTTP boundary — aiohttp routes over the reward and wagering core.

Authenticates the caller, decodes the payload, calls one core operation and
maps its ``CoreError`` (if any) to a status code via ``HTTP_STATUS``. No
business rule lives here.
"""

from __future__ import annotations

import hmac
import json
import logging
import re
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol

from aiohttp import web

from .booster import is_active
from .errors import HTTP_STATUS, CoreError, ErrorKind, core_error
from .utils import iso_week_str, now_utc

if TYPE_CHECKING:
    from .main import LotteryApp


class IdentityProvider(Protocol):
    async def authenticate(self, request: web.Request) -> str | None:
        """Return the opaque authenticated user id, or None."""
        ...


class TrustedHeaderIdentity:
    """Reads the user id from a header set by the upstream auth proxy."""

    def __init__(self, header: str) -> None:
        self._header = header

    async def authenticate(self, request: web.Request) -> str | None:
        value = request.headers.get(self._header, "").strip()
        return value or None


def error_response(error: CoreError) -> web.Response:
    return web.json_response(error.to_dict(), status=HTTP_STATUS[error.kind])


def result_response(result: Any) -> web.Response:
    if isinstance(result, CoreError):
        return error_response(result)
    return web.json_response({"success": True, **result.to_dict()})


@web.middleware
async def error_middleware(
    request: web.Request,
    handler: Callable[[web.Request], Awaitable[web.StreamResponse]],
) -> web.StreamResponse:
    """Translate anything unexpected into the ``internal`` error kind."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception:
        logging.getLogger("lottery").exception(
            "Unhandled error on %s %s", request.method, request.path,
        )
        return error_response(CoreError(ErrorKind.INTERNAL, "internal", "Internal Server Error"))


class LotteryApi:
    """Route handlers bound to a running LotteryApp."""

    def __init__(self, app: LotteryApp, identity: IdentityProvider) -> None:
        self._app = app
        self._identity = identity

    def register(self, web_app: web.Application) -> None:
        web_app.add_routes([
            web.get("/api/me", self.me),
            web.post("/api/verify-ad", self.verify_ad),
            web.get("/api/prize-pool", self.prize_pool),
            web.post("/api/booster/evidence", self.booster_evidence),
            web.post("/api/booster/purchase", self.booster_purchase),
            web.post("/api/casino/blackjack/deal", self.blackjack_deal),
            web.post("/api/casino/blackjack/hit", self.blackjack_hit),
            web.post("/api/casino/blackjack/stand", self.blackjack_stand),
            web.post("/api/casino/blackjack/forfeit", self.blackjack_forfeit),
            web.get("/api/casino/blackjack/state", self.blackjack_state),
            web.post("/api/casino/roulette", self.roulette),
            web.post("/api/casino/hilo", self.hilo),
            web.post("/api/casino/scratch", self.scratch),
            web.get("/api/conversion-cap", self.conversion_cap),
            web.post("/api/convert-chips", self.convert_chips),
            web.post("/api/admin/sync-revenue", self.sync_revenue),
            web.get("/api/webhooks/offerwall", self.offerwall_postback),
            web.post("/api/webhooks/offerwall", self.offerwall_postback),
        ])

    # ── Helpers ──────────────────────────────────────────────

    async def _user(self, request: web.Request) -> str | CoreError:
        user_id = await self._identity.authenticate(request)
        if not user_id:
            return core_error("unauthorized", "Unauthorized")
        return user_id

    @staticmethod
    async def _body(request: web.Request, code: str) -> dict | CoreError:
        """Decode a JSON object body; malformed input maps to ``code``."""
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return core_error(code, "Request body must be valid JSON.")
        if not isinstance(body, dict):
            return core_error(code, "Request body must be a JSON object.")
        return body

    # ── Account & tickets ────────────────────────────────────

    async def me(self, request: web.Request) -> web.Response:
        user_id = await self._user(request)
        if isinstance(user_id, CoreError):
            return error_response(user_id)
        now = now_utc()
        week_id = iso_week_str(now)
        user = await self._app.db.get_or_create_user(user_id)
        tickets = await self._app.db.get_weekly_tickets(user_id, week_id) or {}
        return web.json_response({
            "user_id": user_id,
            "chips": user["chips"],
            "coins": user["coins"],
            "booster_active": is_active(user["booster_expires_at"], now),
            "booster_expires_at": user["booster_expires_at"],
            "week_id": week_id,
            "organic_tickets": tickets.get("organic_tickets", 0),
            "converted_tickets": tickets.get("converted_tickets", 0),
        })

    async def verify_ad(self, request: web.Request) -> web.Response:
        user_id = await self._user(request)
        if isinstance(user_id, CoreError):
            return error_response(user_id)
        result = await self._app.ad_rewards.verify_ad_view(user_id)
        return result_response(result)

    async def prize_pool(self, request: web.Request) -> web.Response:
        pool = await self._app.ad_rewards.get_prize_pool(request.query.get("week_id"))
        return web.json_response(pool)

    # ── Booster ──────────────────────────────────────────────

    async def booster_evidence(self, request: web.Request) -> web.Response:
        user_id = await self._user(request)
        if isinstance(user_id, CoreError):
            return error_response(user_id)
        limit = self._app.config.booster.max_evidence_bytes
        too_large = core_error(
            "evidence_too_large", f"File too large. Maximum {limit // (1024 * 1024)}MB.",
        )
        if request.content_length is not None and request.content_length > limit:
            return error_response(too_large)
        try:
            raw = await request.read()
        except web.HTTPRequestEntityTooLarge:
            return error_response(too_large)
        try:
            text = raw.decode("utf-8-sig")
        except UnicodeDecodeError:
            return error_response(core_error(
                "invalid_evidence", "History export must be UTF-8 text.",
            ))
        del raw
        hint = request.query.get("filename") or request.headers.get("X-Filename")
        result = await self._app.booster.activate_with_evidence(user_id, text, hint)
        return result_response(result)

    async def booster_purchase(self, request: web.Request) -> web.Response:
        user_id = await self._user(request)
        if isinstance(user_id, CoreError):
            return error_response(user_id)
        return result_response(await self._app.booster.activate_with_payment(user_id))

    # ── Blackjack ────────────────────────────────────────────

    async def blackjack_deal(self, request: web.Request) -> web.Response:
        user_id = await self._user(request)
        if isinstance(user_id, CoreError):
            return error_response(user_id)
        body = await self._body(request, "invalid_bet")
        if isinstance(body, CoreError):
            return error_response(body)
        return result_response(await self._app.blackjack.deal(user_id, body.get("bet")))

    async def blackjack_hit(self, request: web.Request) -> web.Response:
        user_id = await self._user(request)
        if isinstance(user_id, CoreError):
            return error_response(user_id)
        return result_response(await self._app.blackjack.hit(user_id))

    async def blackjack_stand(self, request: web.Request) -> web.Response:
        user_id = await self._user(request)
        if isinstance(user_id, CoreError):
            return error_response(user_id)
        return result_response(await self._app.blackjack.stand(user_id))

    async def blackjack_forfeit(self, request: web.Request) -> web.Response:
        user_id = await self._user(request)
        if isinstance(user_id, CoreError):
            return error_response(user_id)
        return result_response(await self._app.blackjack.forfeit(user_id))

    async def blackjack_state(self, request: web.Request) -> web.Response:
        user_id = await self._user(request)
        if isinstance(user_id, CoreError):
            return error_response(user_id)
        state = await self._app.blackjack.state(user_id)
        return web.json_response(state.to_dict())

    # ── Single-step games ────────────────────────────────────

    async def roulette(self, request: web.Request) -> web.Response:
        user_id = await self._user(request)
        if isinstance(user_id, CoreError):
            return error_response(user_id)
        body = await self._body(request, "invalid_bets")
        if isinstance(body, CoreError):
            return error_response(body)
        return result_response(await self._app.casino.spin(user_id, body.get("bets")))

    async def hilo(self, request: web.Request) -> web.Response:
        user_id = await self._user(request)
        if isinstance(user_id, CoreError):
            return error_response(user_id)
        body = await self._body(request, "invalid_bet")
        if isinstance(body, CoreError):
            return error_response(body)
        return result_response(
            await self._app.casino.hilo(user_id, body.get("bet"), body.get("guess")),
        )

    async def scratch(self, request: web.Request) -> web.Response:
        user_id = await self._user(request)
        if isinstance(user_id, CoreError):
            return error_response(user_id)
        return result_response(await self._app.casino.scratch(user_id))

    # ── Conversion ───────────────────────────────────────────

    async def conversion_cap(self, request: web.Request) -> web.Response:
        user_id = await self._user(request)
        if isinstance(user_id, CoreError):
            return error_response(user_id)
        status = await self._app.conversion.status()
        return web.json_response(status.to_dict())

    async def convert_chips(self, request: web.Request) -> web.Response:
        user_id = await self._user(request)
        if isinstance(user_id, CoreError):
            return error_response(user_id)
        body = await self._body(request, "invalid_amount")
        if isinstance(body, CoreError):
            return error_response(body)
        return result_response(await self._app.conversion.convert(user_id, body.get("amount")))

    # ── Admin ────────────────────────────────────────────────

    def _admin(self, request: web.Request) -> CoreError | None:
        expected = self._app.config.admin.api_key.strip()
        token = re.sub(r"^bearer\s+", "", request.headers.get("Authorization", ""), flags=re.I).strip()
        if not expected or not token or not hmac.compare_digest(
            token.encode("utf-8"), expected.encode("utf-8"),
        ):
            return core_error("unauthorized", "Unauthorized")
        return None

    async def sync_revenue(self, request: web.Request) -> web.Response:
        denied = self._admin(request)
        if denied:
            return error_response(denied)
        body = await self._body(request, "invalid_amount")
        if isinstance(body, CoreError):
            return error_response(body)
        result = await self._app.ad_rewards.sync_revenue(
            body.get("gross_revenue"), body.get("week_id"),
        )
        return result_response(result)

    # ── Offerwall ────────────────────────────────────────────

    async def offerwall_postback(self, request: web.Request) -> web.Response:
        params: dict[str, str] = dict(request.query)
        if request.method == "POST" and request.can_read_body:
            # Body fields override the query; form-encoded or empty bodies fall back to it.
            try:
                body = await request.json()
            except (json.JSONDecodeError, UnicodeDecodeError):
                body = None
            if isinstance(body, dict):
                params.update({str(k): str(v) for k, v in body.items()})
        result = await self._app.offerwall.handle_postback(params, request.query.get("secret"))
        if isinstance(result, CoreError):
            return error_response(result)
        return web.Response(text="1", content_type="text/plain")
