"""Consumer endpoints: a single consumer of a channel and the list of a channel's consumers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

from .api import (
    ERR_BAD_REQUEST,
    ERR_NOT_FOUND,
    ApiError,
    Endpoint,
    RecordNotFound,
    format_url,
    get_pagination,
    get_pagination_links,
    json_response,
    status_response,
)
from .channel import CHANNEL_ID_PARAM, CHANNEL_PATH, Channel
from .producer import (
    ListResult,
    MessageStakeholder,
    MsgStakeholder,
    check_form_content_type,
    get_message_stakeholder,
    get_result_response,
    get_update_data,
    is_conditional_update_called,
)

CONSUMERS_PATH = CHANNEL_PATH + "/consumers"
CONSUMER_ID_PARAM = "consumerId"
CONSUMER_PATH = CHANNEL_PATH + "/consumer/:" + CONSUMER_ID_PARAM
CALLBACK_URL_FORM_FIELD = "callbackUrl"


@dataclass
class Consumer(MessageStakeholder):
    """A listener of a channel that receives its messages at a callback URL."""

    consumer_id: str = ""
    callback_url: str = ""
    consuming_from: Optional[Channel] = None


@dataclass
class ConsumerModel(MsgStakeholder):
    """A consumer as presented to HTTP clients."""

    callback_url: str
    dead_letter_queue_url: str


def _is_absolute_url(text: str) -> bool:
    if not text:
        return False
    try:
        parts = urlsplit(text)
    except ValueError:
        return False
    return bool(parts.scheme)


class ConsumerController(Endpoint):
    """Serves ``GET``, ``PUT`` and ``DELETE`` on ``/channel/:channelId/consumer/:consumerId``."""

    path = CONSUMER_PATH
    path_params = (CHANNEL_ID_PARAM, CONSUMER_ID_PARAM)

    def __init__(self, channel_repo, consumer_repo, dlq_endpoint):
        self.channel_repo = channel_repo
        self.consumer_repo = consumer_repo
        self.dlq_endpoint = dlq_endpoint

    def format_as_relative_link(self, **kwargs):
        return format_url(kwargs, CONSUMER_PATH, CHANNEL_ID_PARAM, CONSUMER_ID_PARAM)

    def _consumer_model(self, consumer):
        channel_id = consumer.consuming_from.channel_id if consumer.consuming_from is not None else ""
        stakeholder = get_message_stakeholder(consumer.consumer_id, consumer)
        dlq_url = self.dlq_endpoint.format_as_relative_link(
            **{CHANNEL_ID_PARAM: channel_id, CONSUMER_ID_PARAM: consumer.consumer_id}
        )
        return ConsumerModel(
            id=stakeholder.id,
            name=stakeholder.name,
            token=stakeholder.token,
            changed_at=stakeholder.changed_at,
            callback_url=consumer.callback_url,
            dead_letter_queue_url=dlq_url,
        )

    def get(self, request, params):
        try:
            consumer = self.consumer_repo.get(params[CHANNEL_ID_PARAM], params[CONSUMER_ID_PARAM])
        except Exception:  # any lookup failure reads as a missing consumer
            return status_response(404, ERR_NOT_FOUND)
        return get_result_response(self._consumer_model(consumer))

    def put(self, request, params):
        check_form_content_type(request)
        channel_id = params[CHANNEL_ID_PARAM]
        consumer_id = params[CONSUMER_ID_PARAM]
        try:
            channel = self.channel_repo.get(channel_id)
        except Exception:  # consumers can only be attached to an existing channel
            raise ApiError(404, ERR_NOT_FOUND) from None
        try:
            existing = self.consumer_repo.get(channel_id, consumer_id)
        except Exception:  # no usable record: this is a create
            existing = None
        if existing is not None:
            is_conditional_update_called(request, existing)
        token, name = get_update_data(request, consumer_id)
        callback_url = request.form.get(CALLBACK_URL_FORM_FIELD, "")
        if not _is_absolute_url(callback_url):
            return status_response(400, ERR_BAD_REQUEST)
        incoming = Consumer(
            consumer_id=consumer_id,
            token=token,
            name=name,
            callback_url=callback_url,
            consuming_from=channel,
        )
        try:
            stored = self.consumer_repo.store(incoming)
        except Exception as err:
            return status_response(500, err)
        return get_result_response(self._consumer_model(stored))

    def delete(self, request, params):
        try:
            consumer = self.consumer_repo.get(params[CHANNEL_ID_PARAM], params[CONSUMER_ID_PARAM])
        except RecordNotFound:
            return status_response(404, ERR_NOT_FOUND)
        except Exception as err:
            return status_response(500, err)
        is_conditional_update_called(request, consumer)
        try:
            self.consumer_repo.delete(consumer)
        except Exception as err:
            return status_response(500, err)
        return status_response(204, None)


class ConsumersController(Endpoint):
    """Serves ``GET /channel/:channelId/consumers``, a paginated list of consumer links."""

    path = CONSUMERS_PATH
    path_params = (CHANNEL_ID_PARAM,)

    def __init__(self, consumer_endpoint, consumer_repo):
        self.consumer_endpoint = consumer_endpoint
        self.consumer_repo = consumer_repo

    def format_as_relative_link(self, **kwargs):
        return format_url(kwargs, CONSUMERS_PATH, CHANNEL_ID_PARAM)

    def get(self, request, params):
        channel_id = params[CHANNEL_ID_PARAM]
        try:
            consumers, page = self.consumer_repo.get_list(channel_id, get_pagination(request))
        except RecordNotFound:
            return status_response(404, ERR_NOT_FOUND)
        except Exception as err:
            return status_response(500, err)
        links = [
            self.consumer_endpoint.format_as_relative_link(
                **{CHANNEL_ID_PARAM: channel_id, CONSUMER_ID_PARAM: consumer.consumer_id}
            )
            for consumer in consumers
        ]
        return json_response(ListResult(result=links, pages=get_pagination_links(request, page)))