"""Message endpoints: a single message, a channel's messages and a consumer's dead letter queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from .api import (
    ERR_BAD_REQUEST_FOR_REQUEUE,
    ERR_NOT_FOUND,
    ApiError,
    Endpoint,
    Pagination,
    RecordNotFound,
    format_url,
    get_pagination,
    get_pagination_links,
    json_response,
    status_response,
)
from .channel import CHANNEL_ID_PARAM, CHANNEL_PATH, Channel
from .consumer import CONSUMER_ID_PARAM, CONSUMER_PATH, Consumer
from .producer import ListResult, Producer, check_form_content_type

MESSAGE_ID_PARAM = "messageId"
MESSAGE_PATH = CHANNEL_PATH + "/message/:" + MESSAGE_ID_PARAM
MESSAGES_PATH = CHANNEL_PATH + "/messages"
DLQ_PATH = CONSUMER_PATH + "/dlq"
REQUEUE_FORM_FIELD = "requeue"


class MessageStatus(Enum):
    """Lifecycle state of a broadcast message."""

    ACKNOWLEDGED = "ACKNOWLEDGED"
    DISPATCHED = "DISPATCHED"


class JobStatus(Enum):
    """Lifecycle state of a delivery of a message to one consumer."""

    QUEUED = "QUEUED"
    INFLIGHT = "INFLIGHT"
    DELIVERED = "DELIVERED"
    DEAD = "DEAD"


@dataclass
class Message:
    """A payload broadcast by a producer to a channel."""

    message_id: str = ""
    payload: str = ""
    content_type: str = ""
    priority: int = 0
    status: MessageStatus = MessageStatus.ACKNOWLEDGED
    received_at: Optional[datetime] = None
    outboxed_at: Optional[datetime] = None
    broadcasted_to: Optional[Channel] = None
    produced_by: Optional[Producer] = None


@dataclass
class DeliveryJob:
    """The delivery of one message to one consumer."""

    message: Message
    listener: Consumer
    status: JobStatus = JobStatus.QUEUED
    status_changed_at: Optional[datetime] = None


@dataclass
class DeliveryJobModel:
    """A delivery job as presented to HTTP clients."""

    listener_endpoint: str
    listener_name: str
    status: str
    status_changed_at: Optional[datetime]


@dataclass
class DeadDeliveryJobModel(DeliveryJobModel):
    """A dead delivery job with a link to its message."""

    message_url: str


@dataclass
class DLQList:
    """A page of dead delivery jobs."""

    dead_jobs: list
    pages: dict


@dataclass
class MessageModel:
    """A message with its delivery jobs as presented to HTTP clients."""

    payload: str
    content_type: str
    produced_by: str
    received_at: Optional[datetime]
    dispatched_at: Optional[datetime]
    status: str
    jobs: list = field(default_factory=list)


def _delivery_job_model(job):
    return DeliveryJobModel(
        listener_endpoint=job.listener.callback_url,
        listener_name=job.listener.name,
        status=job.status.value,
        status_changed_at=job.status_changed_at,
    )


def _message_model(message, jobs):
    return MessageModel(
        payload=message.payload,
        content_type=message.content_type,
        produced_by=message.produced_by.name if message.produced_by is not None else "",
        received_at=message.received_at,
        dispatched_at=message.outboxed_at,
        status=message.status.value,
        jobs=[_delivery_job_model(job) for job in jobs],
    )


def _dead_job_models(message_endpoint, jobs):
    return [
        DeadDeliveryJobModel(
            **vars(_delivery_job_model(job)),
            message_url=message_endpoint.format_as_relative_link(
                **{
                    CHANNEL_ID_PARAM: job.message.broadcasted_to.channel_id,
                    MESSAGE_ID_PARAM: job.message.message_id,
                }
            ),
        )
        for job in jobs
    ]


class MessageController(Endpoint):
    """Serves ``GET /channel/:channelId/message/:messageId`` with all its delivery jobs."""

    path = MESSAGE_PATH
    path_params = (CHANNEL_ID_PARAM, MESSAGE_ID_PARAM)

    def __init__(self, message_repo, delivery_job_repo):
        self.message_repo = message_repo
        self.delivery_job_repo = delivery_job_repo

    def format_as_relative_link(self, **kwargs):
        return format_url(kwargs, MESSAGE_PATH, CHANNEL_ID_PARAM, MESSAGE_ID_PARAM)

    def _all_jobs(self, message):
        jobs = []
        page = Pagination()
        while True:
            page_jobs, page = self.delivery_job_repo.get_jobs_for_message(message, page)
            if not page_jobs:
                return jobs
            jobs.extend(page_jobs)
            page.previous = None

    def get(self, request, params):
        try:
            message = self.message_repo.get(params[CHANNEL_ID_PARAM], params[MESSAGE_ID_PARAM])
        except Exception:  # any lookup failure reads as a missing message
            return status_response(404, ERR_NOT_FOUND)
        try:
            jobs = self._all_jobs(message)
        except Exception as err:
            return status_response(500, err)
        return json_response(_message_model(message, jobs))


class MessagesController(Endpoint):
    """Serves ``GET /channel/:channelId/messages``, a paginated list of message links."""

    path = MESSAGES_PATH
    path_params = (CHANNEL_ID_PARAM,)

    def __init__(self, message_controller, message_repo):
        self.message_controller = message_controller
        self.message_repo = message_repo

    def format_as_relative_link(self, **kwargs):
        return format_url(kwargs, MESSAGES_PATH, CHANNEL_ID_PARAM)

    def get(self, request, params):
        channel_id = params[CHANNEL_ID_PARAM]
        try:
            messages, page = self.message_repo.get_messages_for_channel(channel_id, get_pagination(request))
        except RecordNotFound:
            return status_response(404, ERR_NOT_FOUND)
        except Exception as err:
            return status_response(500, err)
        links = [
            self.message_controller.format_as_relative_link(
                **{CHANNEL_ID_PARAM: channel_id, MESSAGE_ID_PARAM: message.message_id}
            )
            for message in messages
        ]
        return json_response(ListResult(result=links, pages=get_pagination_links(request, page)))


class DLQController(Endpoint):
    """Serves a consumer's dead letter queue: ``GET`` lists dead jobs, ``POST`` requeues them."""

    path = DLQ_PATH
    path_params = (CHANNEL_ID_PARAM, CONSUMER_ID_PARAM)

    def __init__(self, message_controller, delivery_job_repo, consumer_repo):
        self.message_controller = message_controller
        self.delivery_job_repo = delivery_job_repo
        self.consumer_repo = consumer_repo

    def format_as_relative_link(self, **kwargs):
        return format_url(kwargs, DLQ_PATH, CHANNEL_ID_PARAM, CONSUMER_ID_PARAM)

    def _consumer(self, params):
        try:
            return self.consumer_repo.get(params[CHANNEL_ID_PARAM], params[CONSUMER_ID_PARAM])
        except RecordNotFound:
            raise ApiError(404, ERR_NOT_FOUND) from None
        except Exception as err:
            raise ApiError(500, str(err)) from err

    def get(self, request, params):
        consumer = self._consumer(params)
        try:
            dead_jobs, page = self.delivery_job_repo.get_jobs_for_consumer(
                consumer, JobStatus.DEAD, get_pagination(request)
            )
        except Exception as err:
            return status_response(500, err)
        return json_response(
            DLQList(
                dead_jobs=_dead_job_models(self.message_controller, dead_jobs),
                pages=get_pagination_links(request, page),
            )
        )

    def post(self, request, params):
        check_form_content_type(request)
        consumer = self._consumer(params)
        if request.form.get(REQUEUE_FORM_FIELD, "") != consumer.token:
            return status_response(400, ERR_BAD_REQUEST_FOR_REQUEUE)
        try:
            self.delivery_job_repo.requeue_dead_jobs_for_consumer(consumer)
        except Exception as err:
            return status_response(500, err)
        return status_response(202, None)