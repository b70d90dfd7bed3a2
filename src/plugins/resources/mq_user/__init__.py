"""MQ User resource kind plugin."""

from plugins.resources.mq_user.client import MQUserClient
from plugins.resources.mq_user.resource import MQUserKind

__all__ = ["MQUserClient", "MQUserKind"]
