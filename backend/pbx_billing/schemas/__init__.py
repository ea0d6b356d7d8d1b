from pbx_billing.schemas import billing

__all__ = [
    "billing",
]
