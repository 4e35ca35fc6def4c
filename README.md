# llmgate

An asynchronous gateway library for LLM APIs that speaks the OpenAI API. It is
built on `aiohttp`. It routes each request to a deployment of the requested model.
It retries transient failures with jittered backoff, and falls back to the next
deployment when one fails. Virtual API keys, spend budgets, rate limits, response
caching, usage accounting and audit logs are handled by extensions. State can
live in memory, in SQLite (`aiosqlite`) or in Redis.

## Installation

Install the package from a checkout or a built wheel with your usual Python
package installer. The `test` extra adds `pytest` and `pytest-asyncio`.

## Putting a gateway together

You supply the upstream providers. A `llmgate.retry.Provider` takes its
operations as async callables: `chat_completion`, `chat_completion_stream`,
`embedding`, `image_generation`, `audio_speech` and `audio_transcription`. You
can also subclass it and override the methods. An operation that is not supplied
raises `GatewayError`.

```python
from aiohttp import web

from llmgate.admin import key_admin_routes
from llmgate.app import build_app
from llmgate.extension import KeyConfig
from llmgate.handlers import AppState, Registry
from llmgate.retry import Deployment, Provider
from llmgate.storage import MemoryStorage
from llmgate.usage import UsageTracker


async def chat(request):
    return {
        "object": "chat.completion",
        "choices": [],
        "usage": {"prompt_tokens": 3, "completion_tokens": 5, "total_tokens": 8},
    }


provider = Provider("echo", chat_completion=chat)
registry = Registry(
    {"small": [Deployment(provider, timeout=30.0, max_retries=2)]},
    aliases={"default": "small"},
)
storage = MemoryStorage()
usage = UsageTracker(None, storage)
keys = [KeyConfig(name="team-a", key="placeholder", models=["*"])]

state = AppState(registry=registry, extensions=[usage], storage=storage, admin_token="token")
state.key_map.update({k.key: k.name for k in keys})

app = build_app(
    state,
    [key_admin_routes(storage, state.key_map, "token", keys), usage.admin_routes()],
)
web.run_app(app, port=8080)
```

To make keys that were created earlier through the admin API usable again, await
`llmgate.admin.load_stored_keys(storage, keys, state.key_map)` at startup.

`Deployment.timeout` is in seconds, and `0` disables it. `max_retries` sets how
many times transient errors are retried. A `ProviderError` with status 429 or
5xx is transient, and so is `UpstreamTimeout`. Retries start at a 0.1 s backoff,
which doubles each time, and every wait is drawn at random between half the
backoff and the full backoff. Image generation, speech and transcription are
never retried. They only fall back to the next deployment.

## HTTP interface

API routes. When authentication is on, each one needs an
`Authorization: Bearer <key>` header:

| Method | Path                        | Purpose                                                  |
|--------|-----------------------------|----------------------------------------------------------|
| POST   | `/v1/chat/completions`      | Chat completions, streamed as SSE when `stream` is true  |
| POST   | `/v1/embeddings`            | Embeddings                                               |
| POST   | `/v1/images/generations`    | Image generation                                         |
| POST   | `/v1/audio/speech`          | Text to speech                                           |
| POST   | `/v1/audio/transcriptions`  | Multipart transcription upload (needs a `model` field)   |
| GET    | `/v1/models`                | Lists the registered model names                         |
| GET    | `/health`                   | Liveness probe, needs no key                             |

Authentication is skipped only when `AppState.admin_token` is `None` and
`AppState.key_map` is empty. Otherwise a request without a known bearer key gets
`401` with an `authentication_error`.

Streaming responses end with `data: [DONE]`. An idle stream gets a keep-alive
comment every 15 seconds. For streaming requests the gateway adds
`stream_options: {"include_usage": true}` unless the request already sets it.

Errors have the shape `{"error": {"message": ..., "type": ...}}`. A request body
that is not JSON gets `400`. A body without a string `model` gets `422`, and an
unknown model gets `404`. Upstream failures keep the upstream status, with type
`upstream_error`. Timeouts become `504`, with type `timeout_error`.

### Admin routes

`key_admin_routes` (or `KeyAdmin(...).routes()`) serves key management. Every
route checks the admin token, sent as `Authorization: Bearer token`:

| Method | Path                      | Purpose                                                  |
|--------|---------------------------|----------------------------------------------------------|
| POST   | `/v1/admin/keys`          | Create a key: `{"name": "team-a", "models": ["*"]}`      |
| GET    | `/v1/admin/keys`          | List the configured and the created keys, masked         |
| GET    | `/v1/admin/keys/{name}`   | Show one key, masked                                     |
| DELETE | `/v1/admin/keys/{name}`   | Revoke a key that was created through the API            |

The configured keys are the `KeyConfig` list you pass in. They take precedence
over stored keys, and they cannot be created again or deleted through the API.

Each extension's `admin_routes()` adds routes of its own. These routes do not
check any token, so protect them as needed:

- `GET /v1/admin/logs`: audit records, newest first. Filter them with `key`,
  `model`, `since` and `until` (Unix milliseconds) and `limit` (default 100).
- `GET /v1/budget`: the amount spent, the budget and the remaining amount in
  USD, for each key.
- `GET /v1/usage`: prompt and completion token totals for each key and model.
- `DELETE /v1/cache`: empties the response cache.

## Extensions

Each extension subclasses `llmgate.extension.Extension`. Its hooks are
`on_request`, `on_cache_lookup`, `on_response`, `on_chunk` and `on_error`.
`on_request` can reject a request by raising `ExtensionError`.

| Class                                   | Configuration                               | What it does |
|-----------------------------------------|---------------------------------------------|--------------|
| `llmgate.audit.AuditLogger`             | `(config, storage, pricing)`                | Writes one record per completed or failed request, with tokens, cost, latency and status. Writes run in the background, and `drain()` waits for them |
| `llmgate.budget.Budget`                 | `default_budget`, `keys: {name: {budget}}` (USD) | Rejects requests with `429 budget_exceeded` once a key's spending reaches its budget |
| `llmgate.cache.Cache`                   | `ttl_seconds` (default 300)                 | Caches non-streaming chat completions |
| `llmgate.rate_limit.RateLimit`          | `requests_per_minute`, optional `tokens_per_minute` | Rejects requests with `429 rate_limit_error` for each key and calendar minute |
| `llmgate.usage.UsageTracker`            | `(config, storage)`                         | Counts prompt and completion tokens for each key and model |
| `llmgate.request_logging.RequestLogger` | none                                        | Logs one line per completed or failed request to the `llmgate.request` logger |

Prices are `PricingConfig(prompt_cost_per_million, completion_cost_per_million)`,
keyed by model name. Requests made without a virtual key are counted under the
key name `__global`.

## Storage

All backends provide the same asynchronous interface: `get`, `set`, `increment`,
`list` and `delete`. Every key starts with a four-byte prefix that identifies its
owner. `list` returns both plain values and counters. Counters come back as
8-byte little-endian integers. Failures raise `StorageError`.

```python
import asyncio

from llmgate.storage import MemoryStorage, storage_key


async def demo() -> None:
    store = MemoryStorage()
    key = storage_key(b"usge", b"team-a:gpt-4o:p")
    await store.increment(key, 120)
    total = await store.increment(key, 30)
    print(total)  # 150
    for raw_key, raw_value in await store.list(b"usge"):
        print(raw_key, int.from_bytes(raw_value, "little", signed=True))


asyncio.run(demo())
```

`await SqliteStorage.open(path)` (in `llmgate.sqlite_storage`) and
`await RedisStorage.open(url)` (in `llmgate.redis_storage`) return persistent
backends. Call `close()` on them when you are done, or use them with
`async with`.

## Key helpers

```python
from llmgate.admin import constant_time_eq, generate_key, mask_key

key = generate_key()          # "sk-" followed by 64 hex characters
print(mask_key(key))          # the first 8 characters followed by "..."
print(constant_time_eq(key, key))
```

## What is not included

- There is no command and no configuration-file loader. You build the
  `AppState` and the application in your own code and serve it with `aiohttp`.
- There are no ready-made clients for upstream providers. You supply the
  operations of each `Provider` yourself.
- Request durations, token totals and the active-connection gauge
  (`llmgate_request_duration_seconds`, `llmgate_tokens_total`,
  `llmgate_active_connections`) are kept in memory on `AppState.metrics` only.
  Nothing exports them.
- The `models` list of a key is stored and shown, but requests are not checked
  against it.