"""
Entity identifiers: AccountId Pydantic custom type, LedgerId and checksums.
"""

from __future__ import annotations
import re
from typing import Any, Optional, Union
from pydantic import GetCoreSchemaHandler
from pydantic_core import CoreSchema, core_schema

from .errors import BadEntityIdError


ENTITY_ID_REGEX = re.compile(r"^(\d+)(?:\.(\d+)\.(\d+))?(?:-([a-z]{5}))?$")


class LedgerId:
    """Identifies a ledger for entity checksums and TLS certificate checks."""

    NAMES = {
        b"\x00": "mainnet",
        b"\x01": "testnet",
        b"\x02": "previewnet",
    }

    def __init__(self, value: bytes):
        if not isinstance(value, (bytes, bytearray)):
            raise ValueError("LedgerId must be bytes")
        self._value = bytes(value)

    @classmethod
    def from_string(cls, value: str) -> "LedgerId":
        """Parse a ledger id from a network name or hex string."""
        for raw, name in cls.NAMES.items():
            if value == name:
                return cls(raw)
        try:
            return cls(bytes.fromhex(value))
        except ValueError as e:
            raise ValueError(f"Invalid LedgerId: {value}") from e

    def to_bytes(self) -> bytes:
        return self._value

    @property
    def is_known_network(self) -> bool:
        return self._value in self.NAMES

    def __str__(self) -> str:
        return self.NAMES.get(self._value, self._value.hex())

    def __repr__(self) -> str:
        return f"LedgerId('{self}')"

    def __eq__(self, other: Any) -> bool:
        if isinstance(other, LedgerId):
            return self._value == other._value
        return False

    def __hash__(self) -> int:
        return hash(self._value)


LedgerId.MAINNET = LedgerId(b"\x00")
LedgerId.TESTNET = LedgerId(b"\x01")
LedgerId.PREVIEWNET = LedgerId(b"\x02")


def entity_checksum(ledger_id: LedgerId, address: str) -> str:
    """
    Compute the 5-letter checksum of an entity address on a ledger.

    Args:
        ledger_id: Ledger the address belongs to
        address: Address in "shard.realm.num" form

    Returns:
        Checksum made of five lowercase letters
    """
    # digits with 10 standing in for ".", so "0.0.123" -> [0, 10, 0, 10, 1, 2, 3]
    digits = [10 if ch == "." else int(ch) for ch in address]
    p3 = 26 ** 3
    p5 = 26 ** 5
    m = 1_000_003
    w = 31

    s0 = 0
    s1 = 0
    s = 0
    for i, digit in enumerate(digits):
        s = (w * s + digit) % p3
        if i % 2 == 0:
            s0 = (s0 + digit) % 11
        else:
            s1 = (s1 + digit) % 11

    sh = 0
    for b in ledger_id.to_bytes() + bytes(6):
        sh = (w * sh + b) % p5

    c = ((((len(address) % 5) * 11 + s0) * 11 + s1) * p3 + s + sh) % p5
    c = (c * m) % p5

    answer = []
    for _ in range(5):
        answer.append(chr(ord("a") + c % 26))
        c //= 26
    return "".join(reversed(answer))


class AccountId:
    """Custom Pydantic type for ledger account ids ("shard.realm.num")."""

    def __init__(self, shard: int = 0, realm: int = 0, num: int = 0, checksum: Optional[str] = None):
        if shard < 0 or realm < 0 or num < 0:
            raise ValueError("AccountId components must be non-negative")
        self.shard = shard
        self.realm = realm
        self.num = num
        self.checksum = checksum

    @classmethod
    def from_string(cls, value: str) -> "AccountId":
        """Parse "0.0.3", "0.0.123-vfmkw" or a bare account number."""
        match = ENTITY_ID_REGEX.match(value.strip())
        if match is None:
            raise ValueError(f"Invalid AccountId: {value}")
        first, realm, num, checksum = match.groups()
        if realm is None:
            return cls(0, 0, int(first), checksum)
        return cls(int(first), int(realm), int(num), checksum)

    def validate_checksum(self, client) -> None:
        """
        Validate the checksum against the client's ledger.

        Args:
            client: Client whose ledger id is used

        Raises:
            BadEntityIdError: If the checksum does not match
        """
        ledger_id = getattr(client, "ledger_id", None)
        if self.checksum is None or ledger_id is None:
            return

        expected = entity_checksum(ledger_id, str(self))
        if self.checksum != expected:
            raise BadEntityIdError(str(self), self.checksum, expected)

    def to_string_with_checksum(self, client) -> str:
        ledger_id = getattr(client, "ledger_id", None)
        if ledger_id is None:
            raise ValueError(
                "Can't derive checksum for ID without knowing which network the ID is for. "
                "Ensure client's ledger_id is set."
            )
        return f"{self}-{entity_checksum(ledger_id, str(self))}"

    def __str__(self) -> str:
        return f"{self.shard}.{self.realm}.{self.num}"

    def __repr__(self) -> str:
        return f"AccountId('{self}')"

    def __eq__(self, other: Any) -> bool:
        if isinstance(other, AccountId):
            return (self.shard, self.realm, self.num) == (other.shard, other.realm, other.num)
        if isinstance(other, str):
            return str(self) == other
        return False

    def __hash__(self) -> int:
        return hash((self.shard, self.realm, self.num))

    @classmethod
    def __get_pydantic_core_schema__(
        cls,
        source_type: Any,
        handler: GetCoreSchemaHandler,
    ) -> CoreSchema:
        """Return a Pydantic CoreSchema that validates the AccountId."""
        return core_schema.no_info_before_validator_function(
            cls._validate,
            core_schema.is_instance_schema(cls),
            serialization=core_schema.to_string_ser_schema(),
        )

    @classmethod
    def _validate(cls, value: Union[str, int, "AccountId"], _info=None) -> "AccountId":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            return cls.from_string(value)
        if isinstance(value, int) and not isinstance(value, bool):
            return cls(0, 0, value)
        raise ValueError(f"Invalid AccountId: {value}")
