"""Record sources: collection fetch and live change feeds."""

from mandisync.sources.base import ChangeCallback, ErrorCallback, LiveRecordSource, RecordSource, Unsubscribe
from mandisync.sources.http import HttpRecordSource
from mandisync.sources.mqtt import MqttBroker, MqttRecordSource, MqttSubscriptionRuntime, decode_live_message

__all__ = [
    "ChangeCallback",
    "ErrorCallback",
    "HttpRecordSource",
    "LiveRecordSource",
    "MqttBroker",
    "MqttRecordSource",
    "MqttSubscriptionRuntime",
    "RecordSource",
    "Unsubscribe",
    "decode_live_message",
]
