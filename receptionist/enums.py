from enum import Enum


class GdprRequestTypeEnum(str, Enum):
    data_request = "data_request"
    customer_redact = "customer_redact"
    shop_redact = "shop_redact"
    app_uninstalled = "app_uninstalled"
    scopes_update = "scopes_update"


class GdprRequestStatusEnum(str, Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"
