"""Request and response records."""

from courier.models.request import RequestDescriptor
from courier.models.response import Response

__all__ = [
    "RequestDescriptor",
    "Response",
]
