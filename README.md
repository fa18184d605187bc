# autothesis

`autothesis` holds the configuration, cancellation bookkeeping and SQLite
storage layer behind an iterative equity-research assistant. A research *run*
asks a question about a ticker; each run goes through numbered *iterations*
that plan, search, read sources, take evidence notes, draft, critique and
evaluate a memo. Around that core the package stores portfolios, price
snapshots, scanner results, batch jobs, side-by-side comparisons, scheduled
watchlist refreshes, bookmarks and per-domain source reputation.

## Configuration

Settings come from environment variables (a `.env` file in the working
directory is read as well). `load_config` takes a mapping, so you can pass
`os.environ` or a plain dictionary:

```python
from autothesis.config import load_config, default_question_for_ticker

config = load_config({"APP_PORT": "8080", "OPENAI_API_KEY": "placeholder"})
print(config.address())          # 127.0.0.1:8080
print(default_question_for_ticker("NVDA"))
```

| Variable | Default |
| --- | --- |
| `APP_HOST` | `127.0.0.1` |
| `APP_PORT` | `3000` |
| `DATABASE_URL` | `sqlite://autothesis.db` |
| `OPENAI_API_KEY` | empty |
| `OPENAI_MODEL` | `gpt-4.1-mini` |
| `OPENAI_BASE_URL` | `https://api.openai.com/v1` |
| `SEARCH_API_KEY` | empty |
| `SEARCH_PROVIDER` | `tavily` |
| `MAX_ITERATIONS` | `3` |
| `MAX_SOURCES_PER_ITERATION` | `8` |
| `MAX_CONCURRENT_RUNS` | `5` |
| `SCHEDULER_ENABLED` | `true` |
| `SCHEDULER_CHECK_INTERVAL_SECS` | `60` |
| `SCHEDULER_MAX_CONCURRENT_RUNS` | `3` |
| `SCHEDULER_MIN_TICKER_AGE_HOURS` | `24` |

A value that does not parse, or a limit set to zero where at least one is
required, raises `ConfigError`.

## Cancelling runs

`CancellationRegistry` keeps an in-process flag per run so long-running work
can check cheaply whether it should stop:

```python
from autothesis.cancellation import CancellationRegistry

registry = CancellationRegistry()
registry.register("run-1")
registry.cancel("run-1")               # True: a flag existed
registry.is_cancelled("run-1")         # True
registry.clear("run-1")
registry.is_cancelled("run-1")         # False
```

## Storage

`autothesis.db.core.DatabaseCore` opens a SQLite database from a URL such as
`sqlite://autothesis.db`, `sqlite:data.db` or `sqlite::memory:`, turns on
foreign keys and WAL journalling, and applies schema migrations once each.
`connection()` and `transaction()` are context managers; `applied_migrations()`
lists what has been applied.

```python
from autothesis.db.core import DatabaseCore, normalize_database_url

normalize_database_url("sqlite://autothesis.db")   # 'autothesis.db'
core = DatabaseCore("sqlite::memory:")
with core.transaction() as conn:
    ...
```

Timestamps are stored as RFC 3339 text (`encode_time` / `parse_time`) and
calendar dates as `YYYY-MM-DD` (`parse_date`).

The domain tables are reached through repositories, each returning plain
dataclasses:

- `RunRepository` – runs, iterations, events, latest scores and timestamps
- `SearchRepository` – search queries, results, sources, evidence notes and
  `IterationDetail`
- `PriceRepository` – end-of-day `PriceSnapshot` rows
- `PortfolioRepository` – paper-trading portfolios, positions, transactions
- `BatchRepository` – one question asked across many tickers
- `ComparisonRepository` – side-by-side thesis comparisons
- `ScannerRepository` – scanner configs, scan runs, opportunities, signal
  effectiveness
- `SourceQualityRepository` – source annotations and domain reputation
- `ScheduledRunRepository` – watchlist refresh schedules with exponential
  backoff (`backoff_hours`) and reconciliation of stuck scheduled runs
- `RunTemplateRepository` – reusable question templates
- `BookmarkRepository` – bookmarks to runs, iterations and sources

Lookups that find nothing return `None`; deletes and updates report whether a
row was affected.