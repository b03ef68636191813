"""
Serving Module
"""
from .query import QueryFacade, decode_token, encode_token

__all__ = [
    "QueryFacade",
    "decode_token",
    "encode_token",
]
