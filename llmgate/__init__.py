"""Asynchronous LLM API gateway library: routing with retries and fallback, virtual keys, budgets, rate limits, caching, usage and audit logs."""

__version__ = "0.0.6"