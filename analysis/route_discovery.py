#!/usr/bin/env python3
import itertools
from typing import Callable, Iterable, Iterator, List, Optional, Sequence

import networkx as nx

from analysis.models import Route, RouteLeg
from constants import AGGREGATOR_VENUE

RoutePredicate = Callable[[Route], bool]


def build_token_graph(tokens: Sequence[str]) -> nx.DiGraph:
    """
    Builds a complete directed graph over the token universe.
    Every ordered pair of distinct tokens is a tradeable edge.
    """
    graph = nx.DiGraph()
    graph.add_nodes_from(tokens)
    for token_in, token_out in itertools.permutations(tokens, 2):
        graph.add_edge(token_in, token_out)
    return graph


def _route_kind(hop_count: int) -> str:
    if hop_count == 2:
        return 'direct'
    if hop_count == 3:
        return 'triangular'
    return 'multi_hop'


def _rotations(cycle: List[str], start_tokens: Optional[Iterable[str]]) -> Iterator[List[str]]:
    allowed = set(start_tokens) if start_tokens is not None else None
    for index, token in enumerate(cycle):
        if allowed is not None and token not in allowed:
            continue
        yield cycle[index:] + cycle[:index]


def iter_cycle_routes(
    chain: str,
    tokens: Sequence[str],
    venues: Sequence[str],
    max_hops: int,
    start_tokens: Optional[Iterable[str]] = None,
    prune: Optional[RoutePredicate] = None,
) -> Iterator[Route]:
    """
    Lazily yields every simple cycle of up to max_hops legs, starting at each
    allowed start token, with every venue assignment for its legs.
    Each call starts a fresh enumeration.
    """
    if max_hops < 2 or len(tokens) < 2 or not venues:
        return
    start_tokens = list(start_tokens) if start_tokens is not None else None
    graph = build_token_graph(tokens)

    for cycle in nx.simple_cycles(graph, length_bound=max_hops):
        if len(cycle) < 2:
            continue
        for path in _rotations(cycle, start_tokens):
            hops = [(path[i], path[(i + 1) % len(path)]) for i in range(len(path))]
            for assignment in itertools.product(venues, repeat=len(hops)):
                route = Route(
                    legs=tuple(
                        RouteLeg(chain=chain, token_in=token_in, token_out=token_out, venue=venue)
                        for (token_in, token_out), venue in zip(hops, assignment)
                    ),
                    kind=_route_kind(len(hops)),
                )
                if prune is not None and prune(route):
                    continue
                yield route


def iter_cross_chain_routes(
    chains: Sequence[str],
    tokens: Sequence[str],
    settlement_token: str,
    prune: Optional[RoutePredicate] = None,
) -> Iterator[Route]:
    """
    Yields one two-leg route per unordered chain pair and token: buy the token
    with the settlement token on the first chain, sell it back on the second.
    """
    for chain_a, chain_b in itertools.combinations(chains, 2):
        for token in tokens:
            if token == settlement_token:
                continue
            route = Route(
                legs=(
                    RouteLeg(chain=chain_a, token_in=settlement_token, token_out=token, venue=AGGREGATOR_VENUE),
                    RouteLeg(chain=chain_b, token_in=token, token_out=settlement_token, venue=AGGREGATOR_VENUE),
                ),
                kind='cross_chain',
            )
            if prune is not None and prune(route):
                continue
            yield route
