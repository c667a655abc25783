"""
Ledger response status codes.

Precheck codes returned by consensus nodes. Only the codes the execution
core reasons about, plus the common request errors, are enumerated; any
other value is carried as a plain int by the response classifiers.
"""

from __future__ import annotations
from enum import IntEnum
from typing import Union


class Status(IntEnum):
    """Precheck status codes matching the ledger's ResponseCodeEnum."""

    OK = 0
    INVALID_TRANSACTION = 1
    PAYER_ACCOUNT_NOT_FOUND = 2
    INVALID_NODE_ACCOUNT = 3
    TRANSACTION_EXPIRED = 4
    INVALID_TRANSACTION_START = 5
    INVALID_TRANSACTION_DURATION = 6
    INVALID_SIGNATURE = 7
    MEMO_TOO_LONG = 8
    INSUFFICIENT_TX_FEE = 9
    INSUFFICIENT_PAYER_BALANCE = 10
    DUPLICATE_TRANSACTION = 11
    BUSY = 12
    NOT_SUPPORTED = 13
    INVALID_FILE_ID = 14
    INVALID_ACCOUNT_ID = 15
    INVALID_CONTRACT_ID = 16
    INVALID_TRANSACTION_ID = 17
    RECEIPT_NOT_FOUND = 18
    RECORD_NOT_FOUND = 19
    UNKNOWN = 21
    SUCCESS = 22
    TRANSACTION_OVERSIZE = 73
    PLATFORM_NOT_ACTIVE = 76
    PLATFORM_TRANSACTION_NOT_CREATED = 78
    ACCOUNT_DELETED = 81

    @classmethod
    def from_code(cls, code: Union[int, "Status"]) -> Union["Status", int]:
        """
        Map a raw response code to a Status.

        Unknown codes are returned unchanged so that callers never lose
        information the ledger sent back.
        """
        try:
            return cls(code)
        except ValueError:
            return code
