"""
Voting State

The single aggregate the engine operates on. It is owned by whoever loads
it (the host, or a test) and passed into every engine operation; nothing in
the contract package keeps module-level state.

Storage layout, one key per record:

    registry            -> ["alice", "bob", ...]
    sale                -> {"total_tokens", "balance_tokens", "token_price"}
    participant:<id>    -> {"tokens_bought", "spend_per_candidate"}
    tally:<name>        -> int
"""

import json
from typing import Iterable, Optional

U128_MAX = 2**128 - 1

REGISTRY_KEY = "registry"
SALE_KEY = "sale"
PARTICIPANT_PREFIX = "participant:"
TALLY_PREFIX = "tally:"


class CandidateRegistry:
    def __init__(self, names: Iterable[str] = ()):
        self.names = tuple(names)
        # Built once; duplicates are rejected by setup before we get here.
        self.index = {name: i for i, name in enumerate(self.names)}

    def __len__(self) -> int:
        return len(self.names)

    def __contains__(self, name) -> bool:
        return isinstance(name, str) and name in self.index

    def position(self, name: str) -> Optional[int]:
        if not isinstance(name, str):
            return None
        return self.index.get(name)


class SaleState:
    def __init__(self, total_tokens: int = 0, balance_tokens: int = 0, token_price: int = 0):
        self.total_tokens = total_tokens
        self.balance_tokens = balance_tokens
        self.token_price = token_price

    def to_dict(self) -> dict:
        return {
            "total_tokens": self.total_tokens,
            "balance_tokens": self.balance_tokens,
            "token_price": self.token_price,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SaleState":
        return cls(
            total_tokens=data["total_tokens"],
            balance_tokens=data["balance_tokens"],
            token_price=data["token_price"],
        )


class Participant:
    def __init__(self, tokens_bought: int = 0, spend_per_candidate: Optional[list] = None):
        self.tokens_bought = tokens_bought
        self.spend_per_candidate = list(spend_per_candidate or [])

    @classmethod
    def empty(cls, candidate_count: int) -> "Participant":
        return cls(tokens_bought=0, spend_per_candidate=[0] * candidate_count)

    @property
    def tokens_spent(self) -> int:
        return sum(self.spend_per_candidate)

    def to_dict(self) -> dict:
        return {
            "tokens_bought": self.tokens_bought,
            "spend_per_candidate": list(self.spend_per_candidate),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Participant":
        return cls(
            tokens_bought=data["tokens_bought"],
            spend_per_candidate=data["spend_per_candidate"],
        )


class VotingState:
    def __init__(
        self,
        registry: Optional[CandidateRegistry] = None,
        sale: Optional[SaleState] = None,
        participants: Optional[dict] = None,
        tallies: Optional[dict] = None,
    ):
        self.registry = registry
        self.sale = sale or SaleState()
        self.participants: dict[str, Participant] = participants or {}
        self.tallies: dict[str, int] = tallies or {}

    @property
    def initialized(self) -> bool:
        return self.registry is not None

    def snapshot(self) -> dict:
        """Plain-data view of the whole state, used for equality checks."""
        return {
            "registry": list(self.registry.names) if self.registry else None,
            "sale": self.sale.to_dict(),
            "participants": {k: p.to_dict() for k, p in sorted(self.participants.items())},
            "tallies": dict(sorted(self.tallies.items())),
        }

    # ------------------------------------------------------------------
    # Key/value persistence
    # ------------------------------------------------------------------

    def to_storage(self) -> dict:
        """Serialize into ``{storage_key: json_text}``."""
        if not self.initialized:
            return {}
        items = {
            REGISTRY_KEY: json.dumps(list(self.registry.names)),
            SALE_KEY: json.dumps(self.sale.to_dict(), sort_keys=True),
        }
        for identity, participant in self.participants.items():
            items[PARTICIPANT_PREFIX + identity] = json.dumps(participant.to_dict(), sort_keys=True)
        for name, total in self.tallies.items():
            items[TALLY_PREFIX + name] = json.dumps(total)
        return items

    @classmethod
    def from_storage(cls, items: dict) -> "VotingState":
        if REGISTRY_KEY not in items:
            return cls()
        state = cls(
            registry=CandidateRegistry(json.loads(items[REGISTRY_KEY])),
            sale=SaleState.from_dict(json.loads(items[SALE_KEY])),
        )
        for key, value in items.items():
            if key.startswith(PARTICIPANT_PREFIX):
                identity = key[len(PARTICIPANT_PREFIX):]
                state.participants[identity] = Participant.from_dict(json.loads(value))
            elif key.startswith(TALLY_PREFIX):
                state.tallies[key[len(TALLY_PREFIX):]] = int(json.loads(value))
        return state
