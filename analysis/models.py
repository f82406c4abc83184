#!/usr/bin/env python3
import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Tuple

ROUTE_KINDS = ('direct', 'triangular', 'multi_hop', 'cross_chain')


def to_base_units(amount: float, decimals: int) -> int:
    scale = Decimal(10) ** decimals
    return int((Decimal(str(amount)) * scale).to_integral_value())


def from_base_units(amount: int | str, decimals: int) -> float:
    return float(Decimal(str(amount)) / (Decimal(10) ** decimals))


@dataclass(frozen=True)
class Quote:
    """A single swap quote. Amounts are decimal-adjusted token units."""
    chain: str
    from_token: str
    to_token: str
    from_amount: float
    to_amount: float
    venue: str
    estimated_gas: int = 0

    @property
    def price(self) -> float:
        if self.from_amount <= 0:
            return 0.0
        return self.to_amount / self.from_amount


@dataclass(frozen=True)
class RouteLeg:
    """One token-to-token swap on a specific venue."""
    chain: str
    token_in: str
    token_out: str
    venue: str

    @property
    def pair_key(self) -> str:
        return f"{self.chain}:{self.token_in}/{self.token_out}"


@dataclass(frozen=True)
class Route:
    """An ordered sequence of legs plus the figures the evaluator derives for it."""
    legs: Tuple[RouteLeg, ...]
    kind: str
    estimated_gross_profit: Optional[float] = None
    estimated_gas_cost: Optional[float] = None
    estimated_net_profit: Optional[float] = None
    risk_score: Optional[int] = None
    bridge_time_seconds: Optional[int] = None

    @property
    def hop_count(self) -> int:
        return len(self.legs)

    @property
    def start_token(self) -> str:
        return self.legs[0].token_in

    @property
    def chains(self) -> Tuple[str, ...]:
        seen: list[str] = []
        for leg in self.legs:
            if leg.chain not in seen:
                seen.append(leg.chain)
        return tuple(seen)

    @property
    def is_cycle(self) -> bool:
        return self.kind != 'cross_chain' and self.legs[0].token_in == self.legs[-1].token_out

    def describe(self) -> str:
        if self.kind == 'cross_chain':
            buy, sell = self.legs[0], self.legs[-1]
            return f"{buy.token_out}: buy on {buy.chain} / sell on {sell.chain}"
        path = [self.legs[0].token_in] + [leg.token_out for leg in self.legs]
        venues = ",".join(leg.venue for leg in self.legs)
        return f"{' -> '.join(path)} [{venues}]"


@dataclass(frozen=True)
class Opportunity:
    """A scored route, valid for a short window and never mutated."""
    route: Route
    start_amount: float
    final_amount: float
    quotes: Tuple[Quote, ...]
    is_demo: bool = False
    created_at: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def net_profit_usd(self) -> float:
        return self.route.estimated_net_profit or 0.0

    def age(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.created_at
