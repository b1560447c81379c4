from panelsync.models.inbound import ClientRecord, InboundBatch, InboundRecord, PanelInbound
from panelsync.models.user import Group, ImportBatch, PanelType, ProxyProtocol, UserRecord

__all__ = [
    "ClientRecord",
    "Group",
    "ImportBatch",
    "InboundBatch",
    "InboundRecord",
    "PanelInbound",
    "PanelType",
    "ProxyProtocol",
    "UserRecord",
]
