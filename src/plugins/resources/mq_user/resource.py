"""
MQ User resource kind.

A user on a managed message broker, identified by ``broker-id/username``.
The password is write-only: the broker never returns it, so only its
fingerprint is kept in state.
"""

import logging

import aiohttp

from config import RemoteConfig
from identifiers import IdentifierFormat
from plugins.resources.base import RemoteClient, ResourceKind
from plugins.resources.mq_user.client import MQUserClient
from schema import Attribute, ResourceSchema

logger = logging.getLogger(__name__)

PENDING_SCHEMA = ResourceSchema(
    type_name="mq_user_pending",
    attributes=(
        Attribute("console_access", "bool", remote_name="consoleAccess", computed=True),
        Attribute("groups", "list", computed=True),
        Attribute("pending_change", remote_name="pendingChange", computed=True),
    ),
)

USER_SCHEMA = ResourceSchema(
    type_name="mq_user",
    display_name="MQ User",
    attributes=(
        Attribute("broker_id", remote_name="brokerId", required=True, immutable=True),
        Attribute("username", required=True, immutable=True),
        Attribute(
            "password",
            required=True,
            sensitive=True,
            write_only=True,
            min_length=12,
        ),
        Attribute("console_access", "bool", remote_name="consoleAccess"),
        Attribute("groups", "list"),
        Attribute("replication_user", "bool", remote_name="replicationUser"),
        Attribute("pending", "object", computed=True, nested=PENDING_SCHEMA),
    ),
)

USER_ID_FORMAT = IdentifierFormat(fields=("broker_id", "username"))


class MQUserKind(ResourceKind):
    """Broker users managed through the broker service's REST API."""

    @property
    def name(self) -> str:
        return "mq_user"

    @property
    def version(self) -> str:
        return "1.0.0"

    @property
    def schema(self) -> ResourceSchema:
        return USER_SCHEMA

    @property
    def id_format(self) -> IdentifierFormat:
        return USER_ID_FORMAT

    def new_client(
        self, http: aiohttp.ClientSession, remote: RemoteConfig
    ) -> RemoteClient:
        logger.debug(f"Creating MQ user client for {remote.endpoint} ({remote.region})")
        return MQUserClient(
            http,
            endpoint=remote.endpoint,
            access_token=remote.access_token,
            request_timeout=remote.request_timeout,
        )
