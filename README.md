# lexd

Building blocks for a small automation daemon. Events say which action to
run and where they came from: a listener, a watcher, a timer or a manual
trigger. They wait in a bounded FIFO queue that can be saved to disk, and a
pool of worker threads hands them to a processor. Operations that fail can
be retried with exponential backoff. An HTTP server takes manual triggers.

## Installation

```
pip install lexd
```

To run the test suite:

```
pip install "lexd[test]"
pytest
```

## Modules

| Module | Contents |
| --- | --- |
| `lexd.models` | `Config`, `ApplicationSettings`, `RetryPolicy`, `ListenerConfig`, `WatcherConfig`, `TimerConfig`, `ActionConfig`, `ActionParameter`, `Event`, `EventType`, `parse_duration` |
| `lexd.logger` | `init_logger`, `get_logger` |
| `lexd.retry` | `merge_policies`, `run_with_retry`, `RetryCancelledError` |
| `lexd.eventqueue` | `EventQueue`, `QueueStoppedError` |
| `lexd.worker` | `Processor`, `WorkerPool` |
| `lexd.server` | `HTTPServer` |

## Configuration

The configuration is YAML. `Config.from_yaml(text)` parses it, and
`Config.from_dict(data)` builds the same thing from a mapping you already
have. A key that is missing gets its empty default. A value of the wrong
kind, such as a list where a mapping belongs, raises `ValueError`.

```yaml
application:
  log_level: info        # debug, info, warn, error (empty means info)
  log_format: text       # text or json (empty means text)
  max_concurrency: 4
  queue_persist_path: /var/lib/lexd/queue.json
  pid_file_path: /run/lexd.pid
  default_retry:
    max_retries: 5
    delay: 1.0
    backoff_factor: 2.0

listeners:
  - id: deploy-hook
    path: /webhook/deploy
    action: deploy
    auth_token: token
    rate_limit: 2.5
    burst: 5

watchers:
  - id: disk-check
    script: /usr/local/bin/check_disk.sh
    action: cleanup
    interval: 5m

timers:
  - id: nightly
    action: backup
    interval: 24h

actions:
  - id: backup
    script: /usr/local/bin/backup.sh
    parameters:
      - name: target
        type: string
        default: /srv
        required: false
    retry_policy:
      max_retries: 3
```

In YAML the action ID is given under `action`. On the config objects it is
the `action_id` attribute.

### Durations

`parse_duration` reads intervals written as a sequence of numbers with
units: `ns`, `us` (or `µs`), `ms`, `s`, `m` and `h`. Examples are `10s`,
`1.5h` and `1h30m15s`. It returns a `timedelta`. A bare number such as
`10`, including an unquoted YAML integer, raises
`ValueError("time: missing unit in duration \"10\"")`. An unknown unit such
as `5days` and an empty string also raise `ValueError`. The single value
`0` needs no unit.

## Logging

`init_logger(settings, stream)` sets up the `lexd` logger from the
`log_level` and `log_format` of an `ApplicationSettings`. Upper or lower
case both work. Output goes to `stream`, or to stdout when `stream` is
`None`. An unknown level or format raises `ValueError`.

The text format writes `key=value` pairs such as
`time=... level=INFO msg="Test message"`. The JSON format writes one object
per line, such as `{"time":"...","level":"INFO","msg":"Test message"}`.
Fields passed through `extra=` are added to either one.

`get_logger()` returns the logger. If it has not been set up yet, it logs
to stderr at info level and first reports that initialization is missing.

## Events and the queue

```python
from lexd.eventqueue import EventQueue
from lexd.models import Event, EventType

queue = EventQueue(100, "/var/lib/lexd/queue.json")
queue.start()                      # loads events saved by the last stop

event_id = queue.enqueue(Event(action_id="backup", source_id="nightly", type=EventType.TIMER))
event = queue.dequeue()            # blocks until an event is available

queue.stop()                       # saves events still waiting, then refuses new ones
```

- A capacity of zero or less means 1000.
- `enqueue` gives an event without an ID a new UUID and returns the ID. It
  blocks while the queue is full. After `stop` it raises
  `QueueStoppedError`.
- `dequeue` still hands out events that were queued before `stop`. Once
  none are left, it raises `QueueStoppedError`.
- When a persistence path is set, `stop` writes the remaining events as an
  indented JSON array. It writes to `<path>.tmp` first and then renames that
  file into place. An empty queue is saved as `[]`. The saved events are
  taken out of the queue. A second `stop` does nothing.
- When `start` finds no file or an empty file, the queue starts empty. If
  the file cannot be read or parsed, the error is logged and the queue
  starts without those events.
- `Event.to_dict` and `Event.from_dict` are the JSON form. Timestamps are
  RFC 3339 text.

## Workers

```python
from lexd.worker import Processor, WorkerPool

class Runner(Processor):
    def process(self, event):
        ...                        # raise an exception to report failure

pool = WorkerPool(config.application, queue, Runner())
pool.start()                       # max_concurrency threads, at least one
...
pool.stop()                        # signals the workers and waits for them
```

Each worker takes events from the queue and passes them to
`Processor.process`. A processor exception is logged, and the worker goes
on to the next event. A worker exits when the pool is stopped or when the
queue is stopped and empty. `stop` waits for a worker to finish the event
it is working on, and calling it again is safe.

## Retries

`merge_policies(specific, default)` returns a complete `RetryPolicy`. Each
field comes from `specific` if it is set, then from `default`, and then from
the built-in values: 10 retries, a 1 second delay and a backoff factor of
2.0. A value set to zero counts as set.

```python
import threading
from lexd.models import RetryPolicy
from lexd.retry import run_with_retry, RetryCancelledError

cancel = threading.Event()
result = run_with_retry(
    "fetch status",
    RetryPolicy(max_retries=3, delay=0.5),
    lambda: do_work(),
    cancel,
)
```

`run_with_retry` makes one attempt, plus up to `max_retries` more when the
operation fails. After each failure it waits, and every wait is the one
before multiplied by the backoff factor. It returns the operation's result
on success. If the last attempt fails, it raises that attempt's exception
again. If `cancel_event` is set before the first attempt or during a wait,
it raises `RetryCancelledError`. A policy of `None` uses the built-in
defaults.

## HTTP server

`HTTPServer(config, event_queue)` is an aiohttp application. It serves two
routes. Other code can add its own routes to `server.app`.

- `POST /lex/trigger` takes a JSON body of the form
  `{"action_id": "backup", "parameters": {"target": "/srv"}}`. It queues an
  event from `cli_trigger` of type `EventType.MANUAL`, stamped with the
  current UTC time, and replies `202`.
- `POST /lex/reload` replies `202` with
  `Reload request received (implementation pending).`

Any other method gets `405 Method Not Allowed`. A body that is empty, is
not valid JSON, has an unknown field or has no `action_id` gets
`400 Bad Request`. If the queue's `enqueue` raises, the reply is
`500 Internal Server Error`.

```python
server = HTTPServer(config, queue)
await server.start("127.0.0.1", 8080)   # an empty host listens on every interface
...
await server.stop(5.0)                  # raises TimeoutError if shutdown takes longer
```

Calling `start` on a server that is already running raises `RuntimeError`.
Stopping a server that is not running does nothing.

## What this package does not do

- It has no command-line program or daemon entry point. You wire the parts
  together yourself, as the examples show.
- It does not run actions, watcher scripts, timers or webhook listeners.
  Their configuration is parsed into `ActionConfig`, `WatcherConfig`,
  `TimerConfig` and `ListenerConfig`. Doing the work is up to the
  `Processor` you supply and to your own scheduling code.
- `/lex/reload` only acknowledges the request. It does not reload the
  configuration.
- It does not write or read the `pid_file_path` from the settings.