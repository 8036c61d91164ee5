import dataclasses
import itertools
from datetime import datetime, timedelta, timezone

import pytest
from werkzeug.test import Client

from hookbroker.api import FORM_CONTENT_TYPE, ApiApplication, Pagination, RecordNotFound
from hookbroker.channel import Channel
from hookbroker.consumer import (
    CONSUMER_PATH,
    CONSUMERS_PATH,
    Consumer,
    ConsumerController,
    ConsumersController,
)
from hookbroker.message import DLQController
from hookbroker.producer import http_time

BASE_TIME = datetime(2021, 1, 1, tzinfo=timezone.utc)
CHANNEL_ID = "consumer-channel-some-id"
LIST_PREFIX = "consumer-get-list-"
DELETE_ID = "delete-consumer-id"
DELETE_FAILED_ID = "delete-consumer-failed-id"
CALLBACK_URL = "https://example.com/"
PAGE_SIZE = 25


def _page(items, pagination):
    if pagination.previous is not None:
        end = int(pagination.previous)
        start = max(0, end - PAGE_SIZE)
    else:
        start = int(pagination.next) if pagination.next is not None else 0
        end = start + PAGE_SIZE
    chunk = items[start:end]
    return chunk, Pagination(previous=str(start), next=str(start + len(chunk)))


class FakeChannelRepo:
    def __init__(self, *channels):
        self.channels = {channel.channel_id: channel for channel in channels}

    def get(self, channel_id):
        try:
            return self.channels[channel_id]
        except KeyError:
            raise RecordNotFound(channel_id) from None


class FakeConsumerRepo:
    def __init__(self, channel_repo):
        self.channel_repo = channel_repo
        self.consumers = {}
        self._clock = itertools.count()

    def _now(self):
        return BASE_TIME + timedelta(seconds=next(self._clock))

    def get(self, channel_id, consumer_id):
        try:
            return self.consumers[(channel_id, consumer_id)]
        except KeyError:
            raise RecordNotFound(consumer_id) from None

    def store(self, consumer):
        key = (consumer.consuming_from.channel_id, consumer.consumer_id)
        now = self._now()
        previous = self.consumers.get(key)
        created = previous.created_at if previous is not None else now
        stored = dataclasses.replace(consumer, created_at=created, updated_at=now)
        self.consumers[key] = stored
        return stored

    def delete(self, consumer):
        del self.consumers[(consumer.consuming_from.channel_id, consumer.consumer_id)]

    def get_list(self, channel_id, pagination):
        self.channel_repo.get(channel_id)
        items = [c for (ch, _), c in sorted(self.consumers.items()) if ch == channel_id]
        return _page(items, pagination)


class StubConsumerRepo:
    def __init__(self, get_result=None, get_error=None, store_error=None, delete_error=None, list_error=None):
        self.get_result = get_result
        self.get_error = get_error
        self.store_error = store_error
        self.delete_error = delete_error
        self.list_error = list_error
        self.deleted = []

    def get(self, channel_id, consumer_id):
        if self.get_error is not None:
            raise self.get_error
        return self.get_result

    def store(self, consumer):
        raise self.store_error

    def delete(self, consumer):
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append(consumer)

    def get_list(self, channel_id, pagination):
        raise self.list_error


@pytest.fixture
def channel():
    return Channel(channel_id=CHANNEL_ID, token="token", name=CHANNEL_ID)


@pytest.fixture
def channel_repo(channel):
    return FakeChannelRepo(channel)


@pytest.fixture
def consumer_repo(channel_repo, channel):
    repo = FakeConsumerRepo(channel_repo)
    for index in range(49, -1, -1):
        repo.store(
            Consumer(
                consumer_id=f"{LIST_PREFIX}{index}",
                name=f"{LIST_PREFIX}{index}",
                token=f"token - {index}",
                callback_url=CALLBACK_URL,
                consuming_from=channel,
            )
        )
    for consumer_id in (DELETE_ID, DELETE_FAILED_ID):
        repo.store(
            Consumer(
                consumer_id=consumer_id,
                name=consumer_id,
                token="token - DELETE",
                callback_url=CALLBACK_URL,
                consuming_from=channel,
            )
        )
    return repo


def _controller(channel_repo, consumer_repo):
    return ConsumerController(channel_repo, consumer_repo, DLQController(None, None, None))


def _client(*endpoints):
    return Client(ApiApplication(*endpoints))


def _link(consumer_id, channel_id=CHANNEL_ID):
    return _controller(None, None).format_as_relative_link(channelId=channel_id, consumerId=consumer_id)


def _send(client, method, url, form=None, headers=None):
    return client.open(
        url,
        method=method,
        data=form or {},
        content_type=FORM_CONTENT_TYPE,
        headers=headers or {},
    )


def test_consumer_format_as_relative_link():
    controller = _controller(None, None)
    assert controller.path == CONSUMER_PATH
    assert (
        controller.format_as_relative_link(channelId="someChannelId", consumerId="someConsumerId")
        == "/channel/someChannelId/consumer/someConsumerId"
    )


def test_consumer_format_without_params_keeps_template():
    assert _controller(None, None).format_as_relative_link() == "/channel/:channelId/consumer/:consumerId"


def test_consumers_format_as_relative_link():
    controller = ConsumersController(_controller(None, None), None)
    assert controller.path == CONSUMERS_PATH
    assert controller.format_as_relative_link(channelId="someChannelId") == "/channel/someChannelId/consumers"


def test_consumers_get_paginates(channel_repo, consumer_repo):
    listing = ConsumersController(_controller(channel_repo, consumer_repo), consumer_repo)
    client = _client(listing)
    first = client.get(listing.format_as_relative_link(channelId=CHANNEL_ID))
    assert first.status_code == 200
    body = first.get_json()
    assert len(body["Result"]) == 25
    assert all(url.startswith(f"/channel/{CHANNEL_ID}/consumer/") for url in body["Result"])

    previous = client.get(body["Pages"]["previous"])
    assert previous.status_code == 200
    assert previous.get_json()["Result"] == []

    second = client.get(body["Pages"]["next"])
    assert second.status_code == 200
    second_body = second.get_json()
    assert len(second_body["Result"]) == 25

    back = client.get(second_body["Pages"]["previous"])
    assert back.status_code == 200
    assert back.get_json()["Result"] == body["Result"]

    seen = body["Result"] + second_body["Result"]
    next_url = second_body["Pages"]["next"]
    while True:
        response = client.get(next_url)
        assert response.status_code == 200
        page = response.get_json()
        if not page["Result"]:
            break
        seen.extend(page["Result"])
        next_url = page["Pages"]["next"]
    assert len(set(seen)) == 52


def test_consumers_get_generic_error(channel_repo):
    repo = StubConsumerRepo(list_error=RuntimeError("GetList error"))
    listing = ConsumersController(_controller(channel_repo, repo), repo)
    response = _client(listing).get(listing.format_as_relative_link(channelId=CHANNEL_ID))
    assert response.status_code == 500
    assert response.get_data(as_text=True) == "GetList error"


def test_consumers_get_no_channel(channel_repo, consumer_repo):
    listing = ConsumersController(_controller(channel_repo, consumer_repo), consumer_repo)
    response = _client(listing).get(listing.format_as_relative_link(channelId="no-such-channel-for-get-consumers"))
    assert response.status_code == 404


def test_consumer_get_success(channel_repo, consumer_repo):
    controller = _controller(channel_repo, consumer_repo)
    uri = _link(LIST_PREFIX + "0")
    response = _client(controller).get(uri)
    assert response.status_code == 200
    body = response.get_json()
    assert body["ID"] == LIST_PREFIX + "0"
    assert LIST_PREFIX in body["Name"]
    assert "token" in body["Token"]
    assert body["CallbackURL"] == CALLBACK_URL
    assert body["DeadLetterQueueURL"] == uri + "/dlq"
    stored = consumer_repo.get(CHANNEL_ID, LIST_PREFIX + "0")
    assert datetime.fromisoformat(body["ChangedAt"]) == stored.updated_at
    assert response.headers["Last-Modified"] == http_time(stored.updated_at)


def test_consumer_get_not_found(channel_repo, consumer_repo):
    response = _client(_controller(channel_repo, consumer_repo)).get(_link("no-such-consumer"))
    assert response.status_code == 404


def test_consumer_delete_success(channel_repo, consumer_repo):
    unmodified = consumer_repo.get(CHANNEL_ID, DELETE_ID).last_updated_http_time()
    client = _client(_controller(channel_repo, consumer_repo))
    response = client.delete(_link(DELETE_ID), headers={"If-Unmodified-Since": unmodified})
    assert response.status_code == 204
    assert response.get_data(as_text=True) == ""
    with pytest.raises(RecordNotFound):
        consumer_repo.get(CHANNEL_ID, DELETE_ID)


def test_consumer_delete_without_last_modified(channel_repo, consumer_repo):
    response = _client(_controller(channel_repo, consumer_repo)).delete(_link(DELETE_FAILED_ID))
    assert response.status_code == 400


def test_consumer_delete_with_incorrect_last_modified(channel_repo, consumer_repo):
    stale = http_time(BASE_TIME - timedelta(days=30))
    response = _client(_controller(channel_repo, consumer_repo)).delete(
        _link(DELETE_FAILED_ID), headers={"If-Unmodified-Since": stale}
    )
    assert response.status_code == 412
    assert consumer_repo.get(CHANNEL_ID, DELETE_FAILED_ID).consumer_id == DELETE_FAILED_ID


def test_consumer_delete_not_found(channel_repo, consumer_repo):
    response = _client(_controller(channel_repo, consumer_repo)).delete(_link("no-such-consumer"))
    assert response.status_code == 404


def test_consumer_delete_get_error(channel_repo):
    repo = StubConsumerRepo(get_error=RuntimeError("test error"))
    response = _client(_controller(channel_repo, repo)).delete(_link("no-such-consumer"))
    assert response.status_code == 500
    assert response.get_data(as_text=True) == "test error"


def test_consumer_delete_error(channel_repo, consumer_repo):
    failed = consumer_repo.get(CHANNEL_ID, DELETE_FAILED_ID)
    repo = StubConsumerRepo(get_result=failed, delete_error=RuntimeError("test error"))
    response = _client(_controller(channel_repo, repo)).delete(
        _link("whatever"), headers={"If-Unmodified-Since": failed.last_updated_http_time()}
    )
    assert response.status_code == 500
    assert repo.deleted == []


def test_consumer_put_create_with_name_token(channel_repo, consumer_repo):
    client = _client(_controller(channel_repo, consumer_repo))
    response = _send(
        client,
        "PUT",
        _link("put-consumer-id"),
        form={"token": "token", "name": "CREATE NAME", "callbackUrl": CALLBACK_URL + "test1"},
    )
    assert response.status_code == 200
    body = response.get_json()
    assert body["ID"] == "put-consumer-id"
    assert body["Name"] == "CREATE NAME"
    assert body["CallbackURL"] == CALLBACK_URL + "test1"
    assert body["Token"] == "token"


def test_consumer_put_create_without_name_token(channel_repo, consumer_repo):
    client = _client(_controller(channel_repo, consumer_repo))
    response = _send(
        client, "PUT", _link("put-consumer-id-without-data"), form={"callbackUrl": CALLBACK_URL + "test1"}
    )
    assert response.status_code == 200
    body = response.get_json()
    assert body["ID"] == "put-consumer-id-without-data"
    assert body["Name"] == "put-consumer-id-without-data"
    assert body["CallbackURL"] == CALLBACK_URL + "test1"
    assert len(body["Token"]) == 12


def test_consumer_put_update(channel_repo, consumer_repo):
    client = _client(_controller(channel_repo, consumer_repo))
    uri = _link(LIST_PREFIX + "0")
    current = client.get(uri)
    assert current.status_code == 200
    before = datetime.fromisoformat(current.get_json()["ChangedAt"])
    response = _send(
        client,
        "PUT",
        uri,
        form={"token": "secret", "callbackUrl": CALLBACK_URL + "u-test1"},
        headers={"If-Unmodified-Since": current.headers["Last-Modified"]},
    )
    assert response.status_code == 200
    body = response.get_json()
    assert body["CallbackURL"] == CALLBACK_URL + "u-test1"
    assert body["Token"] == "secret"
    assert before < datetime.fromisoformat(body["ChangedAt"])


def test_consumer_put_channel_missing(channel_repo, consumer_repo):
    client = _client(_controller(channel_repo, consumer_repo))
    response = _send(client, "PUT", _link(LIST_PREFIX, channel_id="channel-does-exist"))
    assert response.status_code == 404


def test_consumer_put_unsupported_media_type(channel_repo, consumer_repo):
    failed = consumer_repo.get(CHANNEL_ID, DELETE_FAILED_ID)
    client = _client(_controller(channel_repo, consumer_repo))
    response = client.put(
        _link(DELETE_FAILED_ID), headers={"If-Unmodified-Since": failed.last_updated_http_time()}
    )
    assert response.status_code == 415


@pytest.mark.parametrize("form", [{}, {"callbackUrl": "this is not a URL"}, {"callbackUrl": "./relative"}])
def test_consumer_put_bad_callback_url(channel_repo, consumer_repo, form):
    failed = consumer_repo.get(CHANNEL_ID, DELETE_FAILED_ID)
    client = _client(_controller(channel_repo, consumer_repo))
    response = _send(
        client,
        "PUT",
        _link(DELETE_FAILED_ID),
        form=form,
        headers={"If-Unmodified-Since": failed.last_updated_http_time()},
    )
    assert response.status_code == 400


def test_consumer_put_without_unmodified_since(channel_repo, consumer_repo):
    client = _client(_controller(channel_repo, consumer_repo))
    response = _send(client, "PUT", _link(DELETE_FAILED_ID), form={"callbackUrl": CALLBACK_URL})
    assert response.status_code == 400


def test_consumer_put_precondition_failed(channel_repo, consumer_repo):
    client = _client(_controller(channel_repo, consumer_repo))
    response = _send(
        client,
        "PUT",
        _link(DELETE_FAILED_ID),
        form={"callbackUrl": CALLBACK_URL},
        headers={"If-Unmodified-Since": http_time(BASE_TIME - timedelta(days=30))},
    )
    assert response.status_code == 412


def test_consumer_put_store_error(channel_repo, consumer_repo):
    failed = consumer_repo.get(CHANNEL_ID, DELETE_FAILED_ID)
    repo = StubConsumerRepo(get_result=failed, store_error=RuntimeError("error"))
    client = _client(_controller(channel_repo, repo))
    response = _send(
        client,
        "PUT",
        _link("whatever"),
        form={"callbackUrl": CALLBACK_URL},
        headers={"If-Unmodified-Since": failed.last_updated_http_time()},
    )
    assert response.status_code == 500
    assert response.get_data(as_text=True) == "error"