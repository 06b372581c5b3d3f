import datetime
import decimal
import uuid
from decimal import Decimal, ROUND_HALF_UP

from django.conf import settings


def currency_quant():
    return Decimal(str(getattr(settings, "POS_CURRENCY_QUANT", "0.01")))


def to_money(value):
    return Decimal(str(value or 0)).quantize(currency_quant(), rounding=ROUND_HALF_UP)


def to_json_compatible(value):
    if isinstance(value, dict):
        return {key: to_json_compatible(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_json_compatible(item) for item in value]
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, decimal.Decimal):
        return str(value)
    if isinstance(value, (datetime.date, datetime.datetime, datetime.time)):
        return value.isoformat()
    return value
