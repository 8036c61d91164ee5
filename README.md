# hookbroker

hookbroker is the HTTP API of a webhook message broker. It is a WSGI
application built on Werkzeug. Producers publish messages to channels. Each
channel has consumers, and a consumer receives messages at its callback URL.
Delivery jobs that die are kept in a per-consumer dead-letter queue, where you
can list them and requeue them.

## Installation

```
pip install hookbroker
```

To run the test suite:

```
pip install "hookbroker[test]"
pytest
```

## Modules

- `hookbroker.api`: routing and responses shared by all endpoints.
  - `ApiApplication` is the WSGI app.
  - `configure_api` and `ApiServer` run a background server.
  - `ApiError` and `RecordNotFound` are the error types.
  - `Pagination` holds paging cursors.
  - `Endpoint` is the base class for endpoints.
  - `ServerLifecycleListener` receives server lifecycle events.
- `hookbroker.status`: `StatusController`.
- `hookbroker.producer`: `ProducerController` and `ProducersController`, plus the stored `Producer` record. It also holds helpers used by every stakeholder resource: `check_form_content_type`, `is_conditional_update_called`, `get_update_data`, `get_result_response` and `http_time`.
- `hookbroker.channel`: `ChannelController`, `ChannelsController` and `Channel`.
- `hookbroker.consumer`: `ConsumerController`, `ConsumersController` and `Consumer`.
- `hookbroker.message`: `MessageController`, `MessagesController`, `DLQController`, `Message`, `DeliveryJob`, `MessageStatus` and `JobStatus`.

## Endpoints

| Path | Methods | Controller |
| --- | --- | --- |
| `/_status` | GET | `StatusController` |
| `/producers` | GET | `ProducersController` |
| `/producer/:producerId` | GET, PUT | `ProducerController` |
| `/channels` | GET | `ChannelsController` |
| `/channel/:channelId` | GET, PUT | `ChannelController` |
| `/channel/:channelId/consumers` | GET | `ConsumersController` |
| `/channel/:channelId/consumer/:consumerId` | GET, PUT, DELETE | `ConsumerController` |
| `/channel/:channelId/messages` | GET | `MessagesController` |
| `/channel/:channelId/message/:messageId` | GET | `MessageController` |
| `/channel/:channelId/consumer/:consumerId/dlq` | GET, POST | `DLQController` |

`ApiApplication` routes a method to a controller only if the controller has a
method of that name: `get`, `put`, `post` or `delete`. HEAD requests are
answered by `get`.

### Responses

Resources are returned as JSON. Field names are written in CamelCase with
acronyms in capitals, for example `ID`, `ChangedAt`, `ConsumersURL` and
`DeadLetterQueueURL`. Timestamps are ISO 8601 strings. A single producer,
channel or consumer also carries a `Last-Modified` header.

Errors come back as plain text:

- `404` if the resource is not found.
- `500` if a repository raised an error. The body is the error's text.

### Creating and updating

PUT and POST requests must use `Content-Type: application/x-www-form-urlencoded`.
Otherwise the response is `415`.

When a PUT targets a resource that already exists, the request needs an
`If-Unmodified-Since` header. A consumer DELETE needs it too. The header must
match the `Last-Modified` value exactly:

- If the header is missing, the response is `400`.
- If the value does not match, the response is `412`.

A PUT for a resource that does not exist yet creates it, and needs no
`If-Unmodified-Since` header.

Form fields:

- `token`: if omitted, a random 12-character alphanumeric token is used.
- `name`: if omitted, the resource id is used.
- `callbackUrl`: consumers only. It is required and must be an absolute URL; otherwise the response is `400`.

A consumer can only be created under a channel that exists; otherwise the
response is `404`. A successful DELETE returns `204`.

### Paging

List endpoints return an object with two fields:

- `Result`: a list of relative links.
- `Pages`: holds `previous` and/or `next` links, built from the repository's returned cursors.

The cursors travel in the query parameters `previous` and `next`.

### Messages and dead-letter queue

`GET .../message/:messageId` returns the message and every delivery job for
it. The message's status is `ACKNOWLEDGED` or `DISPATCHED`. A job's status is
`QUEUED`, `INFLIGHT`, `DELIVERED` or `DEAD`.

`GET .../dlq` returns `DeadJobs` and `Pages`. Each dead job has a `MessageURL`.

`POST .../dlq` requeues the consumer's dead jobs and returns `202`. The form
field `requeue` must equal the consumer's token; otherwise the response is
`400`.

### Request ids

Every response carries an `X-Request-ID` header. If the request sent one, it
is echoed back; otherwise a new id is generated. Each request is logged on the
`hookbroker.access` logger.

## Repositories

You supply the storage objects when you build the controllers. Each is
duck-typed and must provide these methods:

- **App repository**: `get_app()`. It returns an object with `seed_data` and `status`.
- **Producer repository**:
  - `get(producer_id)`
  - `store(producer)`
  - `get_list(pagination)`, which returns `(items, pagination)`.
- **Channel repository**: `get(channel_id)`, `store(channel)` and `get_list(pagination)`.
- **Consumer repository**:
  - `get(channel_id, consumer_id)`
  - `store(consumer)`
  - `delete(consumer)`
  - `get_list(channel_id, pagination)`
- **Message repository**:
  - `get(channel_id, message_id)`
  - `get_messages_for_channel(channel_id, pagination)`
- **Delivery job repository**:
  - `get_jobs_for_message(message, pagination)`
  - `get_jobs_for_consumer(consumer, JobStatus.DEAD, pagination)`
  - `requeue_dead_jobs_for_consumer(consumer)`

Where a missing record must give `404` rather than `500`, raise
`hookbroker.api.RecordNotFound`. This applies to the consumer lookups in
DELETE and the DLQ endpoints, and to the consumer and message list endpoints.

## Usage

```python
from types import SimpleNamespace

from hookbroker.api import ApiApplication, Endpoint, ServerLifecycleListener, configure_api
from hookbroker.channel import ChannelController, ChannelsController
from hookbroker.consumer import ConsumerController, ConsumersController
from hookbroker.message import DLQController, MessageController, MessagesController
from hookbroker.producer import ProducerController, ProducersController
from hookbroker.status import StatusController


class BroadcastLink(Endpoint):
    path = "/channel/:channelId/broadcast"
    path_params = ("channelId",)


message = MessageController(message_repo, job_repo)
dlq = DLQController(message, job_repo, consumer_repo)
consumer = ConsumerController(channel_repo, consumer_repo, dlq)
consumers = ConsumersController(consumer, consumer_repo)
messages = MessagesController(message, message_repo)
channel = ChannelController(consumers, messages, BroadcastLink(), channel_repo)
producer = ProducerController(producer_repo)

app = ApiApplication(
    StatusController(app_repo),
    producer,
    ProducersController(producer_repo, producer),
    channel,
    ChannelsController(channel_repo, channel),
    consumer,
    consumers,
    message,
    messages,
    dlq,
)

listener = ServerLifecycleListener()
http_config = SimpleNamespace(listening_addr="127.0.0.1:8080", read_timeout=10, write_timeout=10)
server = configure_api(http_config, listener, app)
server.ready.wait()
...
server.shutdown()
```

`app` is an ordinary WSGI application, so any WSGI server can host it.
`configure_api` is an alternative: it starts Werkzeug's threaded server on a
background thread.

- The listening address is given as `host:port`. Port `0` picks a free port, which you can read from `server.port` once `server.ready` is set.
- The larger of `read_timeout` and `write_timeout` becomes the per-connection timeout.
- When called from the main thread, it also installs handlers that shut the server down on SIGINT or SIGTERM.
- The listener gets `starting_server`, `server_start_failed` and `server_shutdown_completed` calls.

## What this package does not include

- **Storage.** No repository implementations, database or migrations are included.
- **Broadcast.** There is no broadcast endpoint to publish messages. `ChannelController` only needs something that formats the broadcast link, as `BroadcastLink` does above.
- **Delivery.** Nothing dispatches messages or delivers them to callbacks.
- **Startup.** There is no configuration-file loading and no command-line program.