"""Budget extension: per-key spending limits in USD."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass
from typing import Any

from aiohttp import web

from llmgate.extension import (
    Extension,
    ExtensionError,
    GatewayError,
    PricingConfig,
    RequestContext,
    Usage,
    cost,
)
from llmgate.storage import PREFIX_LEN, Storage, storage_key

PREFIX = b"bdgt"
GLOBAL_KEY = "__global"


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


@dataclass
class BudgetEntry:
    """Spending state of one key."""

    key: str
    spent_usd: float
    budget_usd: float
    remaining_usd: float


async def budget_report(
    storage: Storage,
    default_budget_micros: int,
    key_budgets: Mapping[str, int],
) -> list[BudgetEntry]:
    """Spending of every key that has a stored counter."""
    try:
        pairs = await storage.list(PREFIX)
    except GatewayError:
        pairs = []
    entries = []
    for raw_key, raw_value in pairs:
        try:
            suffix = raw_key[PREFIX_LEN:].decode("utf-8")
        except UnicodeDecodeError:
            continue
        spent_micros = (
            int.from_bytes(raw_value[:8], "little", signed=True) if len(raw_value) >= 8 else 0
        )
        budget_micros = key_budgets.get(suffix, default_budget_micros)
        spent_usd = spent_micros / 1_000_000.0
        budget_usd = budget_micros / 1_000_000.0
        entries.append(
            BudgetEntry(
                key=suffix,
                spent_usd=spent_usd,
                budget_usd=budget_usd,
                remaining_usd=max(budget_usd - spent_usd, 0.0),
            )
        )
    return entries


class Budget(Extension):
    """Rejects requests from keys whose recorded spending reached their budget."""

    name = "budget"
    prefix = PREFIX

    def __init__(
        self,
        config: Mapping[str, Any],
        storage: Storage,
        pricing: Mapping[str, PricingConfig] | None = None,
    ) -> None:
        default_budget = _as_float(config.get("default_budget"))
        if default_budget is None:
            raise ValueError("budget: missing or invalid 'default_budget' (USD float)")
        if default_budget <= 0.0:
            raise ValueError("budget: 'default_budget' must be positive")

        key_budgets: dict[str, int] = {}
        keys_table = config.get("keys")
        if isinstance(keys_table, Mapping):
            for key_name, key_config in keys_table.items():
                budget = (
                    _as_float(key_config.get("budget"))
                    if isinstance(key_config, Mapping)
                    else None
                )
                if budget is None:
                    raise ValueError(f"budget: key '{key_name}' missing or invalid 'budget'")
                key_budgets[key_name] = int(budget * 1_000_000.0)

        self._storage = storage
        self._pricing = dict(pricing or {})
        self.default_budget_micros = int(default_budget * 1_000_000.0)
        self.key_budgets = key_budgets

    def budget_for_key(self, key_name: str) -> int:
        """Budget of a key in millionths of a USD."""
        return self.key_budgets.get(key_name, self.default_budget_micros)

    def cost_micros(self, model: str, prompt_tokens: int, completion_tokens: int) -> int:
        """Cost of a call in millionths of a USD, or 0 for unpriced models."""
        pricing = self._pricing.get(model)
        if pricing is None:
            return 0
        return int(cost(pricing, prompt_tokens, completion_tokens) * 1_000_000.0)

    def admin_routes(self) -> list[web.RouteDef]:
        storage = self._storage
        default_budget = self.default_budget_micros
        key_budgets = dict(self.key_budgets)

        async def report(request: web.Request) -> web.Response:
            entries = await budget_report(storage, default_budget, key_budgets)
            return web.json_response([asdict(e) for e in entries])

        return [web.get("/v1/budget", report)]

    async def _record_cost(self, key_name: str, model: str, usage: Usage) -> None:
        micros = self.cost_micros(model, usage.prompt_tokens, usage.completion_tokens)
        if micros > 0:
            try:
                await self._storage.increment(storage_key(PREFIX, key_name.encode()), micros)
            except GatewayError:
                pass

    async def on_request(self, ctx: RequestContext) -> None:
        key_name = ctx.key_name or GLOBAL_KEY
        budget = self.budget_for_key(key_name)
        try:
            spent = await self._storage.increment(storage_key(PREFIX, key_name.encode()), 0)
        except GatewayError:
            spent = 0
        if spent >= budget:
            raise ExtensionError(429, "budget exceeded", "budget_exceeded")

    async def on_response(
        self,
        ctx: RequestContext,
        request: Mapping[str, Any],
        response: Mapping[str, Any],
    ) -> None:
        usage = Usage.from_payload(response)
        if usage is not None:
            await self._record_cost(ctx.key_name or GLOBAL_KEY, ctx.model, usage)

    async def on_chunk(self, ctx: RequestContext, chunk: Mapping[str, Any]) -> None:
        usage = Usage.from_payload(chunk)
        if usage is not None:
            await self._record_cost(ctx.key_name or GLOBAL_KEY, ctx.model, usage)