"""
===========================================================
network.py
Last Updated: 2026-10-19
===========================================================
Contact Network Simulator
==========================

Discrete-time SIR transmission over an explicit contact graph
(networkx), one node per individual. Each step:

    - every susceptible node with k infectious neighbours becomes
      infectious with probability 1 - (1 - p)^k, i.e. at least one
      of k independent per-contact attempts succeeds
    - every node infectious at the start of the step recovers
      independently with probability r

All decisions in a step are drawn from the state at the start of
the step and applied together (synchronous update), so a node
infected this step neither transmits nor recovers until the next.

License: MIT
===========================================================
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Hashable, Iterable, Optional

import networkx as nx
import numpy as np

from .config import NetworkConfig
from .errors import ConfigurationError
from .interventions import NO_INTERVENTION, InterventionSchedule
from .state import Trajectory

logger = logging.getLogger(__name__)

SUSCEPTIBLE, INFECTIOUS, RECOVERED = 0, 1, 2
LABELS = ("S", "I", "R")


def build_network(kind: str, n: int, seed: Optional[int] = None, **kwargs) -> nx.Graph:
    """
    Build a contact graph with a networkx generator.

    kind: "erdos_renyi" (p), "barabasi_albert" (m), "watts_strogatz" (k, p),
          "complete" or "path"
    """
    if n <= 0:
        raise ConfigurationError("network size must be positive")
    if kind == "erdos_renyi":
        return nx.erdos_renyi_graph(n, kwargs.get("p", 0.01), seed=seed)
    if kind == "barabasi_albert":
        return nx.barabasi_albert_graph(n, kwargs.get("m", 2), seed=seed)
    if kind == "watts_strogatz":
        return nx.watts_strogatz_graph(n, kwargs.get("k", 4), kwargs.get("p", 0.1), seed=seed)
    if kind == "complete":
        return nx.complete_graph(n)
    if kind == "path":
        return nx.path_graph(n)
    raise ConfigurationError(f"unknown network kind {kind!r}")


@dataclass(frozen=True)
class NetworkResult:
    """
    Output of one network run.

    trajectory: aggregate S/I/R counts per step (incidence = new infections)
    graph: copy of the input graph with final "state" labels on every node
    node_states: (steps+1, N) label codes per step, only when record_nodes=True
    nodes: node identifiers in node_states column order
    """
    trajectory: Trajectory
    graph: nx.Graph
    node_states: Optional[np.ndarray] = None
    nodes: tuple = ()

    def node_history(self, node: Hashable) -> list:
        if self.node_states is None:
            raise ConfigurationError("run with record_nodes=True to keep per-node detail")
        col = self.nodes.index(node)
        return [LABELS[code] for code in self.node_states[:, col]]


class NetworkSimulator:
    """
    SIR on a contact network.

    Parameters:
    -----------
    graph: networkx.Graph
        Contact structure; never modified (runs work on a copy)
    config: NetworkConfig, optional
        max_steps and record_nodes
    schedule: InterventionSchedule, optional
        Scales the per-contact transmission probability at each step
    """
    def __init__(self, graph: nx.Graph, config: Optional[NetworkConfig] = None,
                 schedule: Optional[InterventionSchedule] = None):
        if graph.number_of_nodes() == 0:
            raise ConfigurationError("contact network has no nodes")
        if graph.is_directed():
            raise ConfigurationError("contact network must be undirected")
        self.graph = graph
        self.config = config or NetworkConfig()
        self.schedule = schedule or NO_INTERVENTION
        self.nodes = tuple(graph.nodes())
        self._index: Dict[Hashable, int] = {node: i for i, node in enumerate(self.nodes)}
        self._adjacency = nx.to_scipy_sparse_array(graph, nodelist=self.nodes, weight=None, format="csr")

    def initial_labels(self, seeds: Iterable[Hashable], recovered: Iterable[Hashable] = ()) -> np.ndarray:
        labels = np.full(len(self.nodes), SUSCEPTIBLE, dtype=np.int8)
        for group, code in ((recovered, RECOVERED), (seeds, INFECTIOUS)):
            for node in group:
                if node not in self._index:
                    raise ConfigurationError(f"seed node {node!r} is not in the network")
                labels[self._index[node]] = code
        return labels

    def step(self, labels: np.ndarray, transmission_prob: float, recovery_prob: float,
             rng: np.random.Generator) -> np.ndarray:
        """One synchronous update; returns new labels, leaves `labels` untouched"""
        infectious = labels == INFECTIOUS
        susceptible = labels == SUSCEPTIBLE
        k = self._adjacency @ infectious.astype(np.float64)
        p_infect = 1.0 - np.power(1.0 - transmission_prob, k)
        infect_draw = rng.random(len(labels))
        recover_draw = rng.random(len(labels))

        new = labels.copy()
        new[susceptible & (infect_draw < p_infect)] = INFECTIOUS
        new[infectious & (recover_draw < recovery_prob)] = RECOVERED
        return new

    def run(self, transmission_prob: float, recovery_prob: float, seeds: Iterable[Hashable],
            seed: Optional[int] = None, recovered: Iterable[Hashable] = ()) -> NetworkResult:
        """
        Run until no node is infectious or max_steps is reached.

        transmission_prob: per-contact, per-step transmission probability p in [0, 1]
        recovery_prob: per-step recovery probability r in [0, 1]
        seeds: nodes initially infectious
        seed: random seed (or numpy Generator) for reproducible runs
        """
        for label, v in (("transmission_prob", transmission_prob), ("recovery_prob", recovery_prob)):
            if not 0.0 <= v <= 1.0:
                raise ConfigurationError(f"{label} must be a probability in [0, 1]")
        rng = seed if isinstance(seed, np.random.Generator) else np.random.default_rng(seed)
        labels = self.initial_labels(seeds, recovered)
        logger.info("network run: %d nodes, %d edges, %d seeds",
                    len(self.nodes), self.graph.number_of_edges(), int((labels == INFECTIOUS).sum()))

        history = [labels] if self.config.record_nodes else None
        counts = [np.bincount(labels, minlength=3)]
        incidence = [0]
        step = 0
        while step < self.config.max_steps and np.any(labels == INFECTIOUS):
            p = transmission_prob * self.schedule.factor(float(step))
            new = self.step(labels, p, recovery_prob, rng)
            incidence.append(int(np.sum((labels == SUSCEPTIBLE) & (new == INFECTIOUS))))
            labels = new
            counts.append(np.bincount(labels, minlength=3))
            if history is not None:
                history.append(labels)
            step += 1

        termination = "absorbed" if not np.any(labels == INFECTIOUS) else "max_steps"
        trajectory = Trajectory(
            times=np.arange(len(counts), dtype=float),
            values=np.array(counts, dtype=np.int64),
            compartments=LABELS,
            incidence=np.array(incidence, dtype=np.int64),
            metadata={"model": "network-SIR", "transmission_prob": transmission_prob,
                      "recovery_prob": recovery_prob, "termination": termination},
        )
        final = self.graph.copy()
        nx.set_node_attributes(final, {node: LABELS[labels[i]] for i, node in enumerate(self.nodes)}, "state")
        return NetworkResult(
            trajectory=trajectory,
            graph=final,
            node_states=np.array(history) if history is not None else None,
            nodes=self.nodes,
        )
