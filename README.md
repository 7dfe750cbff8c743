# tradedesk

Building blocks for a small Flask HTTP service that stores daily OHLCV
(open, high, low, close, volume) stock data in SQLite and serves it
back as JSON. Requests to the data API are authenticated against an
Ory Kratos session; each signed-in user gets a set of preferences,
including a default data source and a watchlist.

## Installing

```
pip install .
```

For running the test suite:

```
pip install ".[test]"
pytest
```

## What the package does not do

There is no command to start a server and no ready-made application
factory. The package provides the storage layer, the services, the
request hooks and the views; you create the `flask.Flask` application,
wire them together as shown below, and run it under a WSGI server of
your choice. Waiting for the database or Kratos to become reachable
before serving is also left to you.

## Assembling an application

```python
from flask import Flask

from tradedesk.auth import init_auth_config
from tradedesk.auth_handlers import AuthHandlers
from tradedesk.cors import install_cors, install_preflight, install_security_headers
from tradedesk.database import Database, run_migrations
from tradedesk.health_handlers import HealthHandlers
from tradedesk.logger import configure
from tradedesk.market_handlers import MarketHandlers
from tradedesk.market_service import MarketService
from tradedesk.request_logging import (
    install_recovery,
    install_request_id,
    install_request_logger,
)
from tradedesk.user_service import UserService

configure("development", "info")
init_auth_config("http://localhost:4433", "http://localhost:4433")

db = Database("tradedesk.sqlite3")
run_migrations(db)
market_service = MarketService(db)
user_service = UserService(db)

app = Flask(__name__)
for install in (
    install_recovery,
    install_request_logger,
    install_request_id,
    install_security_headers,
    install_cors,
    install_preflight,
):
    install(app)

HealthHandlers(market_service).register(app)
AuthHandlers(user_service).register(app)
MarketHandlers(market_service, user_service).register(app)
```

`Database()` with no path opens an in-memory database, which is handy
for tests. `run_migrations` creates the `market_data` and
`user_preferences` tables and their indexes if they are missing.

`tradedesk.logger.configure(environment, level)` writes JSON lines when
the environment is `"production"` and tab-separated console text
otherwise; the level is one of `debug`, `info`, `warn`, `error`,
`dpanic`, `panic`, `fatal` (unknown names mean `info`).

## CORS and security headers

`install_cors(app)` reads allowed origins from the `CORS_ORIGINS`
environment variable, a comma-separated list. When it is unset, the
local development origins `http://localhost:8000`,
`http://127.0.0.1:8000`, `http://localhost:4455`,
`http://127.0.0.1:4455` and `http://localhost:8080` are allowed; when
the app runs in debug mode any `http://localhost:` or
`http://127.0.0.1:` origin passes as well. Requests from other origins
get `403`. A custom `tradedesk.cors.CorsPolicy` can be passed instead.

`install_security_headers(app)` adds `X-Content-Type-Options`,
`X-Frame-Options`, `X-XSS-Protection`, `Referrer-Policy` and a
`Content-Security-Policy`, plus HSTS outside debug mode over HTTPS.

## Authentication

Views wrapped with `tradedesk.auth.auth_required` look for a Kratos
session token in this order:

1. the `ory_kratos_session` cookie;
2. an `Authorization` header of the form `Bearer token` or `Session token`;
3. an `X-Session-Token` header.

The token is checked with Kratos' `/sessions/whoami` endpoint at the
internal URL given to `init_auth_config`. Missing, invalid, inactive or
expired sessions get a `401` response carrying a `login_url` built from
the browser URL. A user's role comes from the `role` trait of their
Kratos identity and defaults to `trader`; `role_required("admin")`
turns away other roles with `403`.

## Endpoints

Registered by the handler classes. Public:

| Method | Path              | Description                                   |
|--------|-------------------|-----------------------------------------------|
| GET    | `/health`         | Liveness check                                |
| GET    | `/ready`          | Readiness check; verifies the database        |
| GET    | `/auth/status`    | Whether the caller is signed in, and as whom  |
| GET    | `/auth/login-url` | Where to send the user to sign in             |
| POST   | `/auth/logout`    | Where to send the user to sign out            |

Signed-in users only:

| Method | Path                                   | Description                                      |
|--------|----------------------------------------|--------------------------------------------------|
| GET    | `/auth/me`                             | Current user and their preferences (created with defaults if missing) |
| GET    | `/api/v1/market-data?symbol=S&limit=N` | Latest `N` rows for `S` (default 30, max 1000)   |
| POST   | `/api/v1/market-data`                  | Store one row                                    |
| POST   | `/api/v1/market-data/bulk`             | Store many rows, updating existing ones          |
| GET    | `/api/v1/market-data/<symbol>`         | Latest 30 rows, or a `start_date`/`end_date` range (`YYYY-MM-DD`) |
| POST   | `/api/v1/market-data/yahoo/<symbol>`   | Generate and store sample data for `days` days (default 7, max 365) |
| DELETE | `/api/v1/market-data/<symbol>`         | Remove all rows for a symbol (role `admin` only) |
| POST   | `/api/v1/upload/csv`                   | Import a CSV file sent as form field `file`      |
| GET    | `/api/v1/preferences`                  | Read preferences                                 |
| PUT    | `/api/v1/preferences`                  | Update `default_source`, `selected_symbols` or `watchlist` |
| POST   | `/api/v1/preferences/watchlist/<symbol>`   | Add a symbol to the watchlist                |
| DELETE | `/api/v1/preferences/watchlist/<symbol>`   | Remove a symbol from the watchlist           |

A market data row has a `symbol`, a `date`, `open`, `high`, `low`,
`close` (all positive), a positive integer `volume`, and a `source`,
which is one of `yahoo`, `mirae` or `manual`. Rows are unique per
symbol, date and source. Invalid bodies get `400` with the list of
problems in `message`.

The `yahoo` endpoint does not contact any outside service; it stores
generated sample quotes (see
`tradedesk.market_handlers.generate_mock_quotes`).

## CSV import

Uploaded CSV files start with a header line, followed by rows of the form

```
Symbol,Date,Open,High,Low,Close,Volume
BBCA.JK,2025-01-06,8500,8600,8450,8550,12500000
```

Rows with fewer than seven columns or a date that is not `YYYY-MM-DD`
are skipped and reported in the response's `errors` list; unparsable
numbers are stored as zero. The rest are stored with source `mirae`,
replacing any earlier values for the same symbol and date. The response
gives the counts of rows imported and skipped. The parser is available
on its own as `tradedesk.market_handlers.parse_csv_upload`.

## Using the storage layer directly

`tradedesk.market_service.MarketService` and
`tradedesk.user_service.UserService` work on a
`tradedesk.database.Database` without Flask. Database failures raise
`tradedesk.database.DatabaseError`; missing preferences raise
`tradedesk.user_service.PreferencesNotFound`.