"""Producer endpoints and the helpers shared by all message stakeholder resources."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from werkzeug.http import http_date

from .api import (
    ERR_BAD_REQUEST,
    ERR_NOT_FOUND,
    ERR_UNSUPPORTED_MEDIA_TYPE,
    FORM_CONTENT_TYPE,
    HEADER_CONTENT_TYPE,
    HEADER_LAST_MODIFIED,
    HEADER_UNMODIFIED_SINCE,
    ApiError,
    Endpoint,
    format_url,
    get_pagination,
    get_pagination_links,
    json_response,
    random_token,
    status_response,
)

PRODUCERS_PATH = "/producers"
PRODUCER_ID_PARAM = "producerId"
PRODUCER_PATH = "/producer/:" + PRODUCER_ID_PARAM


def http_time(moment):
    """Format a timestamp the way HTTP date headers expect; empty for no timestamp."""
    if moment is None:
        return ""
    return http_date(moment)


@dataclass
class MessageStakeholder:
    """Stored data common to producers, channels and consumers."""

    name: str = ""
    token: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def last_updated_http_time(self):
        """The last update time as an HTTP date string."""
        return http_time(self.updated_at)


@dataclass
class Producer(MessageStakeholder):
    """A party allowed to broadcast messages."""

    producer_id: str = ""


@dataclass
class MsgStakeholder:
    """A stakeholder as presented to HTTP clients."""

    id: str
    name: str
    token: str
    changed_at: Optional[datetime]

    def last_updated_http_time(self):
        """The last change time as an HTTP date string."""
        return http_time(self.changed_at)


@dataclass
class ListResult:
    """A page of resource links with links to the neighbouring pages."""

    result: list
    pages: dict
    links: Optional[dict] = None


def get_message_stakeholder(stakeholder_id, stakeholder):
    """Build the client-facing view of a stored stakeholder."""
    return MsgStakeholder(
        id=stakeholder_id,
        name=stakeholder.name,
        token=stakeholder.token,
        changed_at=stakeholder.updated_at,
    )


def is_conditional_update_called(request, model):
    """Check ``If-Unmodified-Since`` against the model's last update time.

    Raises :class:`ApiError` with 400 when the header is missing and 412
    when it does not match; returns True otherwise.
    """
    unmodified_since = request.headers.get(HEADER_UNMODIFIED_SINCE, "")
    if not unmodified_since:
        raise ApiError(400, ERR_BAD_REQUEST)
    if unmodified_since != model.last_updated_http_time():
        raise ApiError(412, ERR_UNSUPPORTED_MEDIA_TYPE)
    return True


def get_update_data(request, default_name):
    """Read ``token`` and ``name`` from the form, falling back to a random token and the default name."""
    token = request.form.get("token", "") or random_token()
    name = request.form.get("name", "") or default_name
    return token, name


def check_form_content_type(request):
    """Raise a 415 :class:`ApiError` unless the body is URL-encoded form data."""
    if request.headers.get(HEADER_CONTENT_TYPE) != FORM_CONTENT_TYPE:
        raise ApiError(415, ERR_UNSUPPORTED_MEDIA_TYPE)
    return True


def get_result_response(model):
    """A JSON response for the model, carrying ``Last-Modified`` when it has an update time."""
    response = json_response(model)
    last_updated = getattr(model, "last_updated_http_time", None)
    if callable(last_updated):
        response.headers.add(HEADER_LAST_MODIFIED, last_updated())
    return response


class ProducerController(Endpoint):
    """Serves ``GET`` and ``PUT`` on ``/producer/:producerId``."""

    path = PRODUCER_PATH
    path_params = (PRODUCER_ID_PARAM,)

    def __init__(self, producer_repo):
        self.producer_repo = producer_repo

    def format_as_relative_link(self, **kwargs):
        return format_url(kwargs, PRODUCER_PATH, PRODUCER_ID_PARAM)

    def get(self, request, params):
        producer_id = params[PRODUCER_ID_PARAM]
        try:
            producer = self.producer_repo.get(producer_id)
        except Exception:  # any lookup failure reads as a missing producer
            return status_response(404, ERR_NOT_FOUND)
        return get_result_response(get_message_stakeholder(producer_id, producer))

    def put(self, request, params):
        check_form_content_type(request)
        producer_id = params[PRODUCER_ID_PARAM]
        try:
            existing = self.producer_repo.get(producer_id)
        except Exception:  # no usable record: this is a create
            existing = None
        if existing is not None:
            is_conditional_update_called(request, existing)
        token, name = get_update_data(request, producer_id)
        try:
            stored = self.producer_repo.store(Producer(producer_id=producer_id, token=token, name=name))
        except Exception as err:
            return status_response(500, err)
        return get_result_response(get_message_stakeholder(producer_id, stored))


class ProducersController(Endpoint):
    """Serves ``GET /producers``, a paginated list of producer links."""

    path = PRODUCERS_PATH

    def __init__(self, producer_repo, producer_endpoint):
        self.producer_repo = producer_repo
        self.producer_endpoint = producer_endpoint

    def format_as_relative_link(self, **kwargs):
        return PRODUCERS_PATH

    def get(self, request, params):
        try:
            producers, page = self.producer_repo.get_list(get_pagination(request))
        except Exception as err:
            return status_response(500, err)
        links = [
            self.producer_endpoint.format_as_relative_link(**{PRODUCER_ID_PARAM: producer.producer_id})
            for producer in producers
        ]
        return json_response(ListResult(result=links, pages=get_pagination_links(request, page)))