"""Database models package."""
from models.database import Base, get_session, init_db, close_db, get_pool_status, get_engine
from models.workspace import Workspace
from models.user import User
from models.channel import Channel
from models.channel_membership import ChannelMembership
from models.message import Message
from models.slack_file import SlackFile

__all__ = [
    "Base",
    "get_session",
    "init_db",
    "close_db",
    "get_pool_status",
    "get_engine",
    "Workspace",
    "User",
    "Channel",
    "ChannelMembership",
    "Message",
    "SlackFile",
]
