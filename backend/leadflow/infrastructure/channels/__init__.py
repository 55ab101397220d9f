"""
Channel Agents Package
"""
from leadflow.infrastructure.channels.chat import RedisChatChannel
from leadflow.infrastructure.channels.email import MailgunEmailChannel
from leadflow.infrastructure.channels.factory import ChannelFactory
from leadflow.infrastructure.channels.sms import VonageSMSChannel

__all__ = ["ChannelFactory", "MailgunEmailChannel", "RedisChatChannel", "VonageSMSChannel"]
