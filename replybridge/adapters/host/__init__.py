from .alarms import PersistentAlarmHost
from .local import LocalChannelHost, LocalChannelPort
from .stream import StreamChannelConnector, StreamChannelPort, StreamChannelServer

__all__ = [
    "LocalChannelHost",
    "LocalChannelPort",
    "PersistentAlarmHost",
    "StreamChannelConnector",
    "StreamChannelPort",
    "StreamChannelServer",
]
