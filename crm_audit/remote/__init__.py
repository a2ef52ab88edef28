"""Remote CRM capability and its HTTP implementation."""

from crm_audit.remote.base import RemotePlatform
from crm_audit.remote.http_client import HubSpotClient

__all__ = ["HubSpotClient", "RemotePlatform"]
