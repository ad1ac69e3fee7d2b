"""
Profiling script for pyforcetree simulation performance.

Builds random trees of increasing size and profiles the force simulation
(with and without edge repulsion) and the tidy tree layout.
"""

import cProfile
import pstats
import io
from pstats import SortKey
import random
import time

from pyforcetree.model import Node, make_edge
from pyforcetree.simulation import Simulation, SimulationConfig
from pyforcetree.treelayout import compute_tree_layout


def create_tree(n_nodes, n_connections=0, seed=42):
    """Create a random tree with n nodes plus some connection edges."""
    rng = random.Random(seed)
    nodes = [Node(0, node_type='root')]
    edges = []
    for i in range(1, n_nodes):
        parent = rng.randrange(0, i)
        nodes.append(Node(i))
        edges.append(make_edge(parent, i))
    for _ in range(n_connections):
        a, b = rng.randrange(n_nodes), rng.randrange(n_nodes)
        if a != b:
            edges.append(make_edge(a, b, 'connection'))
    return nodes, edges


def run_simulation(n_nodes, n_connections, edge_repulsion=True):
    nodes, edges = create_tree(n_nodes, n_connections)
    config = SimulationConfig()
    config.edge_repulsion.enabled = edge_repulsion
    sim = Simulation(nodes, edges, config, rng=random.Random(7))
    sim.start()
    sim.kick(300)


def profile_small_tree():
    """Profile a small tree (30 nodes)."""
    run_simulation(30, 5)


def profile_medium_tree():
    """Profile a medium tree (150 nodes)."""
    run_simulation(150, 20)


def profile_medium_tree_no_edge_repulsion():
    """Profile a medium tree without edge repulsion."""
    run_simulation(150, 20, edge_repulsion=False)


def profile_tree_layout():
    """Profile the tidy tree layout on a large tree (2000 nodes)."""
    nodes, edges = create_tree(2000)
    compute_tree_layout(nodes, edges, 1600, 1200)


def benchmark_scenario(name, func):
    """Benchmark a scenario and print timing."""
    print(f"\n{'='*60}")
    print(f"Profiling: {name}")
    print('='*60)

    profiler = cProfile.Profile()

    start_time = time.time()
    profiler.enable()
    func()
    profiler.disable()
    elapsed = time.time() - start_time

    print(f"\nTotal time: {elapsed:.3f}s")

    s = io.StringIO()
    ps = pstats.Stats(profiler, stream=s).sort_stats(SortKey.CUMULATIVE)
    ps.print_stats(20)

    print("\nTop 20 functions by cumulative time:")
    print(s.getvalue())

    return profiler


def main():
    """Run all profiling scenarios."""
    print("pyforcetree Performance Profiling")
    print("=" * 60)

    scenarios = [
        ("Small Tree (30 nodes)", profile_small_tree),
        ("Medium Tree (150 nodes)", profile_medium_tree),
        ("Medium Tree without edge repulsion", profile_medium_tree_no_edge_repulsion),
        ("Tree Layout (2000 nodes)", profile_tree_layout),
    ]

    profilers = {}
    for name, func in scenarios:
        profilers[name] = benchmark_scenario(name, func)

    print("\n" + "="*60)
    print("Saving detailed profiles...")
    print("="*60)

    for name, profiler in profilers.items():
        filename = f"profile_{name.lower().replace(' ', '_').replace('(', '').replace(')', '')}.prof"
        profiler.dump_stats(filename)
        print(f"Saved: {filename}")


if __name__ == "__main__":
    main()
