# ntconnect

`ntconnect` is the device side of a remote management connection. It runs
on a Linux device and:

- authenticates the device against a management server with a signed
  identity document and receives an access token,
- keeps a websocket open to the server and exchanges msgpack-encoded
  protocol messages over it,
- serves remote shell sessions requested through that socket,
- runs an inventory script at intervals and uploads the attributes it
  reports whenever they change.

Every call to the server goes through an exponential backoff. The wait
starts at one second, doubles with each failure up to a ceiling of eight
hours, carries random jitter, and is reset by the first call that succeeds.

## Modules

| Module | Contents |
| --- | --- |
| `ntconnect.api` | `Identity`, `Authz`, `ProtoHeader`, `ProtoMsg`, the `Socket` and `Client` interfaces, `ApiError`, `is_unauthorized`, `is_retryable` |
| `ntconnect.inventory` | `Inventory`: parse `key=value` lines, compute a stable digest, serialise for the server |
| `ntconnect.backoff` | `ExpBackoff`, which wraps any `Client` with exponential backoff |
| `ntconnect.http_client` | `HttpClient`, which talks to the server's authentication and inventory endpoints |
| `ntconnect.wsclient` | `WebSocketClient` and `WebSocket`, which carry protocol messages |
| `ntconnect.identity` | Helpers that build and store the device identity document |
| `ntconnect.dbus` | `SignalHub` and the bus types used when a local agent supplies the token |
| `ntconnect.daemon` | `Daemon`, the connect, route and inventory loop |

## Inventory

An inventory script prints one `key=value` pair per line. When a key
appears more than once, its values are collected into a list. Lines that
contain no `=` are ignored.

```python
import io

from ntconnect.inventory import Inventory

inventory = Inventory.from_stream(io.StringIO("os=linux\nif=eth0\nif=wlan0\n"))
print(inventory.to_json())
# [{"name": "if", "value": ["eth0", "wlan0"]}, {"name": "os", "value": "linux"}]
```

`Inventory.digest()` returns the same value for the same content,
whatever order the keys were read in. The daemon compares digests and
uploads the inventory only when it has changed.

## Errors

Non-success responses from the server are raised as `ApiError`, which
carries the HTTP status code. Two helpers sort these errors:

- `is_unauthorized(err)` is true for a 401 response. The daemon then
  authenticates again.
- `is_retryable(err)` is true for a 401 or any 5xx response. The daemon
  keeps retrying these through the backoff instead of giving up.

```python
from ntconnect.api import ApiError, is_retryable

is_retryable(ApiError(503))  # True
is_retryable(ApiError(404))  # False
```

## Putting it together

```python
from ntconnect.backoff import ExpBackoff
from ntconnect.daemon import Daemon
from ntconnect.http_client import HttpClient

client = ExpBackoff(HttpClient(
    "https://example.com",
    private_key,
    identity,
    True,
    None,
))
```

The `ExpBackoff`-wrapped client is then handed to `Daemon`. The arguments
to `HttpClient` are, in order: the server URL, the private key used to
sign authentication requests, the device `Identity`, whether to verify the
server's TLS certificate, and an optional socket client (here `None`).