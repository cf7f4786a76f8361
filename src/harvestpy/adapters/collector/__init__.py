"""Collector adapters implementing CollectorPort."""

from harvestpy.adapters.collector.api import CollectorAPI, ConnectionState
from harvestpy.adapters.collector.serverless import ServerlessCollector

__all__ = ["CollectorAPI", "ConnectionState", "ServerlessCollector"]
