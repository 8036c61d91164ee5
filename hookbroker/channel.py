"""Channel endpoints: a single channel and the list of channels."""

from __future__ import annotations

from dataclasses import dataclass

from .api import (
    ERR_NOT_FOUND,
    Endpoint,
    format_url,
    get_pagination,
    get_pagination_links,
    json_response,
    status_response,
)
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

CHANNELS_PATH = "/channels"
CHANNEL_ID_PARAM = "channelId"
CHANNEL_PATH = "/channel/:" + CHANNEL_ID_PARAM


@dataclass
class Channel(MessageStakeholder):
    """A topic messages are broadcast to."""

    channel_id: str = ""


@dataclass
class ChannelModel(MsgStakeholder):
    """A channel as presented to HTTP clients, with links to its sub-resources."""

    consumers_url: str
    messages_url: str
    broadcast_url: str


class ChannelController(Endpoint):
    """Serves ``GET`` and ``PUT`` on ``/channel/:channelId``."""

    path = CHANNEL_PATH
    path_params = (CHANNEL_ID_PARAM,)

    def __init__(self, consumers_endpoint, messages_endpoint, broadcast_endpoint, channel_repo):
        self.consumers_endpoint = consumers_endpoint
        self.messages_endpoint = messages_endpoint
        self.broadcast_endpoint = broadcast_endpoint
        self.channel_repo = channel_repo

    def format_as_relative_link(self, **kwargs):
        return format_url(kwargs, CHANNEL_PATH, CHANNEL_ID_PARAM)

    def _channel_model(self, channel):
        link_params = {CHANNEL_ID_PARAM: channel.channel_id}
        stakeholder = get_message_stakeholder(channel.channel_id, channel)
        return ChannelModel(
            id=stakeholder.id,
            name=stakeholder.name,
            token=stakeholder.token,
            changed_at=stakeholder.changed_at,
            consumers_url=self.consumers_endpoint.format_as_relative_link(**link_params),
            messages_url=self.messages_endpoint.format_as_relative_link(**link_params),
            broadcast_url=self.broadcast_endpoint.format_as_relative_link(**link_params),
        )

    def get(self, request, params):
        try:
            channel = self.channel_repo.get(params[CHANNEL_ID_PARAM])
        except Exception:  # any lookup failure reads as a missing channel
            return status_response(404, ERR_NOT_FOUND)
        return get_result_response(self._channel_model(channel))

    def put(self, request, params):
        check_form_content_type(request)
        channel_id = params[CHANNEL_ID_PARAM]
        try:
            existing = self.channel_repo.get(channel_id)
        except Exception:  # no usable record: this is a create
            existing = None
        if existing is not None:
            is_conditional_update_called(request, existing)
        token, name = get_update_data(request, channel_id)
        try:
            stored = self.channel_repo.store(Channel(channel_id=channel_id, token=token, name=name))
        except Exception as err:
            return status_response(500, err)
        return get_result_response(self._channel_model(stored))


class ChannelsController(Endpoint):
    """Serves ``GET /channels``, a paginated list of channel links."""

    path = CHANNELS_PATH

    def __init__(self, channel_repo, channel_endpoint):
        self.channel_repo = channel_repo
        self.channel_endpoint = channel_endpoint

    def format_as_relative_link(self, **kwargs):
        return CHANNELS_PATH

    def get(self, request, params):
        try:
            channels, page = self.channel_repo.get_list(get_pagination(request))
        except Exception as err:
            return status_response(500, err)
        links = [
            self.channel_endpoint.format_as_relative_link(**{CHANNEL_ID_PARAM: channel.channel_id})
            for channel in channels
        ]
        return json_response(ListResult(result=links, pages=get_pagination_links(request, page)))