"""
pyforcetree: force-directed knowledge tree layout

Hierarchical node/edge model with cycle validation, collapse-aware
visibility, a numpy force simulation with edge repulsion, a tidy tree
layout animator and best-effort position persistence.
"""

__version__ = "0.1.0"

from .model import Node, Edge, NodeType, NodeShape, Relationship, make_edge
from .invariants import CycleError, GraphInvariantManager, VisibleSubgraph
from .positions import PositionStore
from .persistence import PositionBackend, PositionPersistence
from .simulation import EventType, Simulation, SimulationConfig, Snapshot
from .treelayout import LayoutAnimator, compute_tree_layout, ease_cubic_in_out
from .controller import TreeLayoutController

__all__ = [
    'Node',
    'Edge',
    'NodeType',
    'NodeShape',
    'Relationship',
    'make_edge',
    'CycleError',
    'GraphInvariantManager',
    'VisibleSubgraph',
    'PositionStore',
    'PositionBackend',
    'PositionPersistence',
    'EventType',
    'Simulation',
    'SimulationConfig',
    'Snapshot',
    'LayoutAnimator',
    'compute_tree_layout',
    'ease_cubic_in_out',
    'TreeLayoutController',
]
