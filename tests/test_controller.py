"""Tests for the tree layout controller."""

import asyncio
import random
import pytest
from pyforcetree.model import Node, NodeType, NodeShape, Relationship
from pyforcetree.invariants import CYCLE_MESSAGE
from pyforcetree.persistence import PositionPersistence
from pyforcetree.simulation import EventType, SimulationConfig
from pyforcetree.controller import TreeLayoutController, MESSAGE_TTL


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class MemoryBackend:
    def __init__(self, stored=None):
        self.stored = stored or {}
        self.saves = []

    async def load_positions(self, tree_id, user_id):
        return self.stored

    async def save_positions(self, tree_id, user_id, positions):
        self.saves.append(positions)


def controller(config=None, clock=None, persistence=None):
    """A -> B, A -> C, B -> D, B -> E."""
    return TreeLayoutController(
        nodes=[{'id': i} for i in ['A', 'B', 'C', 'D', 'E']],
        edges=[('A', 'B'), ('A', 'C'), ('B', 'D'), ('B', 'E')],
        config=config,
        persistence=persistence,
        clock=clock or FakeClock(),
        rng=random.Random(4),
    )


class TestConstruction:
    """Test initial state."""

    def test_levels_derived(self):
        """Test levels and metrics are computed."""
        c = controller()
        assert [c.nodes[i].level for i in 'ABCDE'] == [0, 1, 1, 2, 2]
        assert c.nodes['A'].descendant_count == 4
        assert c.root_id() == 'A'

    def test_invalid_edges_dropped(self):
        """Test edges with unknown endpoints and duplicates are skipped."""
        c = TreeLayoutController(
            nodes=[Node('a'), Node('b')],
            edges=[('a', 'b'), ('a', 'b'), ('a', 'zz'), {'source': 'b', 'target': 'a', 'relationship': 'connection'}]
        )
        assert [e.key for e in c.edges] == [('hierarchy', 'a', 'b'), ('connection', 'b', 'a')]

    def test_deep_chain(self):
        """Test a very deep hierarchy can be built, simulated and removed."""
        depth = 2000
        c = TreeLayoutController(
            nodes=[{'id': i} for i in range(depth)],
            edges=[(i, i + 1) for i in range(depth - 1)],
            rng=random.Random(2),
        )
        assert c.nodes[depth - 1].level == depth - 1
        assert c.nodes[0].descendant_count == depth - 1
        leaf = c.add_node(depth - 1, node_id='leaf')
        assert leaf.level == depth
        assert c.start_simulation() is not None
        assert len(c.remove_node(0)) == depth + 1


class TestValidation:
    """Test rejected mutations."""

    def test_example_a(self):
        """Test the cycle edge is rejected and removal cascades."""
        events = []
        c = TreeLayoutController(
            nodes=[{'id': 'A'}, {'id': 'B'}, {'id': 'C'}],
            edges=[('A', 'B'), ('A', 'C')],
            clock=FakeClock(),
        )
        c.on(EventType.validation, events.append)
        assert c.add_edge('C', 'A') is None
        assert len(c.edges) == 2
        assert set(c.nodes) == {'A', 'B', 'C'}
        assert c.validation_message() == CYCLE_MESSAGE
        assert events[0]['message'] == CYCLE_MESSAGE

        assert c.remove_node('A') == {'A', 'B', 'C'}
        assert c.nodes == {}
        assert c.edges == []

    def test_message_expires(self):
        """Test the validation message auto-expires."""
        clock = FakeClock()
        c = controller(clock=clock)
        c.add_edge('D', 'A')
        clock.now = MESSAGE_TTL - 0.1
        assert c.validation_message() == CYCLE_MESSAGE
        clock.now = MESSAGE_TTL + 0.1
        assert c.validation_message() is None

    def test_unknown_ids_ignored(self):
        """Test edges to unknown nodes are a silent no-op."""
        c = controller()
        assert c.add_edge('A', 'nope') is None
        assert c.validation_message() is None

    def test_transaction_all_or_nothing(self):
        """Test a batch with a cycle commits nothing."""
        c = controller()
        c.add_node(None, node_id='F')
        before = list(c.edges)
        result = c.add_edges([('C', 'F'), ('F', 'A', 'hierarchy')])
        assert result is None
        assert c.edges == before

    def test_transaction_pending_cycle(self):
        """Test edges in one batch are validated against each other."""
        c = TreeLayoutController(nodes=[{'id': i} for i in 'xyz'], clock=FakeClock())
        assert c.add_edges([('x', 'y'), ('y', 'z'), ('z', 'x')]) is None
        assert c.edges == []
        committed = c.add_edges([('x', 'y'), ('y', 'z'), ('z', 'x', 'connection')])
        assert len(committed) == 3
        assert len(c.edges) == 3


class TestMutations:
    """Test node and edge mutations."""

    def test_add_node_under_parent(self):
        """Test a child gets the next level."""
        c = controller()
        node = c.add_node('D', node_id='F', keyword='leaf')
        assert node.level == 3
        assert node.keyword == 'leaf'
        assert c.edges[-1].key == ('hierarchy', 'D', 'F')

    def test_add_node_unknown_parent_goes_to_root(self):
        """Test an unknown parent resolves to the root."""
        c = controller()
        node = c.add_node('missing')
        assert c.edges[-1].source == 'A'
        assert node.level == 1
        assert node.id in c.nodes

    def test_add_node_duplicate_id(self):
        """Test an existing id is rejected."""
        c = controller()
        assert c.add_node('A', node_id='B') is None

    def test_add_first_node_is_root(self):
        """Test the first node of an empty tree becomes the root."""
        c = TreeLayoutController()
        node = c.add_node()
        assert node.node_type == NodeType.root
        assert c.edges == []
        assert c.root_id() == node.id

    def test_add_memo(self):
        """Test memo nodes attach with a memo edge."""
        c = controller()
        memo = c.add_node('B', node_id='M', relationship='memo')
        assert memo.is_memo
        assert memo.memo_parent_id == 'B'
        assert c.edges[-1].relationship == Relationship.memo
        assert memo.level == 2

    def test_update_node(self):
        """Test manual overrides."""
        c = controller()
        node = c.update_node('C', size_value='80', shape='diamond', node_type='question')
        assert node.size_value == 80.0
        assert node.shape == NodeShape.diamond
        assert c.update_node('nope', size_value=1) is None

    def test_update_node_ignores_structural_keys(self):
        """Test id, level, pins and memo ownership cannot be overridden."""
        c = controller()
        node = c.update_node('B', id='Z', level=9, fx=3.0, memo_parent_id='A', keyword='kw')
        assert node is c.nodes['B']
        assert node.id == 'B'
        assert node.level == 1
        assert node.fx is None
        assert node.memo_parent_id is None
        assert node.keyword == 'kw'
        assert ('A', 'B') in [(e.source, e.target) for e in c.edges]

    def test_update_node_rebuilds_simulation(self):
        """Test an override while simulating rebuilds the simulation."""
        c = controller()
        first = c.start_simulation()
        c.update_node('C', size_value=90)
        assert c.simulation is not first
        assert c.simulation.running
        assert c.simulation.node('C').size_value == 90.0

    def test_remove_purges_state(self):
        """Test removal clears selection, collapse set, positions and memos."""
        c = controller()
        c.add_node('B', node_id='M', relationship='memo')
        c.select(['D', 'C'])
        c.toggle_collapse('B')
        c.positions.update({'D': (1, 1), 'C': (2, 2)})
        removed = c.remove_node('B')
        assert removed == {'B', 'D', 'E', 'M'}
        assert c.selection == {'C'}
        assert c.collapsed == set()
        assert 'D' not in c.positions
        assert 'C' in c.positions
        for e in c.edges:
            assert e.source not in removed and e.target not in removed

    def test_remove_unknown(self):
        """Test removing an unknown id changes nothing."""
        c = controller()
        assert c.remove_node('nope') == set()
        assert len(c.nodes) == 5


class TestVisibility:
    """Test collapse and the visible subgraph."""

    def test_example_b(self):
        """Test collapsing B hides D and E."""
        c = controller()
        assert c.toggle_collapse('B')
        sub = c.visible_subgraph()
        assert sub.visible_ids == {'A', 'B', 'C'}
        assert not any(e.target in ('D', 'E') for e in sub.edges)
        assert not c.toggle_collapse('B')
        assert c.visible_subgraph().visible_ids == set('ABCDE')

    def test_toggle_unknown(self):
        """Test toggling an unknown node is ignored."""
        c = controller()
        assert not c.toggle_collapse('nope')
        assert c.collapsed == set()


class TestSimulationMode:
    """Test driving the force simulation."""

    def test_runs_to_completion(self):
        """Test frames until the simulation halts."""
        c = controller()
        sim = c.start_simulation()
        assert c.mode == 'simulation'
        frames = 0
        while c.frame() is not None:
            frames += 1
            assert frames < 500
        assert c.mode is None
        assert not sim.running
        assert set(c.positions.as_dict()) == set('ABCDE')

    def test_only_visible_simulated(self):
        """Test collapsed descendants are not in the simulation."""
        c = controller()
        c.toggle_collapse('B')
        sim = c.start_simulation()
        assert {n.id for n in sim.nodes} == {'A', 'B', 'C'}

    def test_mutation_rebuilds(self):
        """Test adding a node while running rebuilds the simulation."""
        c = controller()
        first = c.start_simulation()
        c.frame()
        c.add_node('C', node_id='F')
        assert c.simulation is not first
        assert not first.running
        assert c.simulation.index_of('F') is not None
        assert c.simulation.alpha() == pytest.approx(0.3)

    def test_stop(self):
        """Test stop cancels the simulation."""
        c = controller()
        sim = c.start_simulation()
        c.stop()
        assert not sim.running
        assert c.frame() is None

    def test_events_forwarded(self):
        """Test simulation events reach controller listeners."""
        ticks = []
        c = controller()
        c.on('tick', ticks.append)
        c.start_simulation()
        c.frame()
        assert len(ticks) == 1
        assert 'snapshot' in ticks[0]

    def test_example_c_drag(self):
        """Test a free-mode drag through the controller."""
        c = controller()
        c.start_simulation()
        c.frame()
        c.drag_start('D')
        c.drag('D', 120, 80)
        c.frame()
        d = c.nodes['D']
        assert (d.x, d.y) == (120.0, 80.0)
        c.drag_end('D')
        assert d.fx is None and d.fy is None
        c.frame()
        assert (d.x, d.y) != (120.0, 80.0)

    def test_disabled_static(self):
        """Test disabled simulation pins everything at once."""
        c = controller(SimulationConfig(enable_force_simulation=False))
        c.start_simulation()
        assert c.mode is None
        assert all(n.is_pinned for n in c.nodes.values())
        assert c.frame() is None


class TestTreeMode:
    """Test the tree layout animation."""

    def test_animates_to_targets(self):
        """Test frames end on the tidy tree targets."""
        clock = FakeClock()
        c = controller(clock=clock)
        targets = c.start_tree_layout()
        assert c.mode == 'tree'
        clock.now = 0.5
        mid = c.frame()
        assert set(mid) == set('ABCDE')
        clock.now = 1.0
        final = c.frame()
        assert final == targets
        assert c.mode is None
        assert c.frame() is None
        assert (c.nodes['D'].x, c.nodes['D'].y) == targets['D']

    def test_stops_simulation(self):
        """Test switching to tree mode stops the simulation."""
        c = controller()
        sim = c.start_simulation()
        c.start_tree_layout('horizontal')
        assert not sim.running
        assert c.mode == 'tree'

    def test_disabled_pins_targets(self):
        """Test static tree layout when the simulation is disabled."""
        c = controller(SimulationConfig(enable_force_simulation=False))
        targets = c.start_tree_layout()
        assert c.mode is None
        b = c.nodes['B']
        assert (b.fx, b.fy) == targets['B']
        assert c.positions.get('B') == targets['B']

    def test_remove_prunes_animation(self):
        """Test removed nodes leave the running animation."""
        clock = FakeClock()
        c = controller(clock=clock)
        c.start_tree_layout()
        clock.now = 0.5
        c.frame()
        c.remove_node('B')
        assert not {'B', 'D', 'E'} & set(c.animator.rendered)
        clock.now = 1.0
        assert set(c.frame()) == {'A', 'C'}

    def test_manual_drag_with_selection(self):
        """Test dragging outside the simulation moves the selection along."""
        clock = FakeClock()
        c = controller(clock=clock)
        c.start_tree_layout()
        clock.now = 2.0
        c.frame()
        d, e = c.nodes['D'], c.nodes['E']
        offset = (e.x - d.x, e.y - d.y)
        c.select(['D', 'E'])
        c.drag_start('D')
        c.drag('D', 0.0, 0.0)
        c.drag_end('D')
        assert (d.x, d.y) == (0.0, 0.0)
        assert (e.x, e.y) == pytest.approx(offset)
        assert c.positions.get('E') == pytest.approx(offset)


class TestPersistence:
    """Test position loading and saving through the controller."""

    def test_load_then_simulate(self):
        """Test loaded positions seed the simulation."""
        backend = MemoryBackend({'C': {'x': 400, 'y': -100}})

        async def scenario():
            c = controller(persistence=PositionPersistence(backend, 't', 'u'))
            loaded = await c.load_positions()
            sim = c.start_simulation()
            return loaded, sim

        loaded, sim = asyncio.run(scenario())
        assert loaded == {'C': (400.0, -100.0)}
        i = sim.index_of('C')
        assert sim.anchor_targets[:, i].tolist() == [400.0, -100.0]

    def test_start_waits_for_load(self):
        """Test a simulation requested before loading starts from stored positions."""
        backend = MemoryBackend({'C': {'x': 500, 'y': 500}})

        async def scenario():
            c = controller(persistence=PositionPersistence(backend, 't', 'u'))
            deferred = c.start_simulation()
            pending = c.simulation
            await c.load_positions()
            return c, deferred, pending

        c, deferred, pending = asyncio.run(scenario())
        assert deferred is None
        assert pending is None
        assert c.mode == 'simulation'
        i = c.simulation.index_of('C')
        assert c.simulation.x[:, i].tolist() == [500.0, 500.0]
        assert (c.nodes['C'].x, c.nodes['C'].y) == (500.0, 500.0)

    def test_tree_layout_waits_for_load(self):
        """Test a deferred tree layout starts once loading finished."""
        backend = MemoryBackend()

        async def scenario():
            c = controller(persistence=PositionPersistence(backend, 't', 'u'))
            deferred = c.start_tree_layout()
            mode_before = c.mode
            await c.load_positions()
            return c, deferred, mode_before

        c, deferred, mode_before = asyncio.run(scenario())
        assert deferred is None
        assert mode_before is None
        assert c.mode == 'tree'

    def test_stop_drops_deferred_start(self):
        """Test stop() cancels a start waiting for the load."""
        backend = MemoryBackend()

        async def scenario():
            c = controller(persistence=PositionPersistence(backend, 't', 'u'))
            c.start_simulation()
            c.stop()
            await c.load_positions()
            return c

        c = asyncio.run(scenario())
        assert c.simulation is None
        assert c.mode is None

    def test_save_after_settle(self):
        """Test positions are saved once the layout settles."""
        backend = MemoryBackend()

        async def scenario():
            p = PositionPersistence(backend, 't', 'u', debounce=0.01)
            c = controller(persistence=p)
            await c.load_positions()
            c.start_simulation()
            while c.frame() is not None:
                pass
            await asyncio.sleep(0.05)
            await p.flush()
            await p.close()

        asyncio.run(scenario())
        assert len(backend.saves) == 1
        assert set(backend.saves[0]) == set('ABCDE')

    def test_no_persistence(self):
        """Test controller without persistence."""
        c = controller()
        assert asyncio.run(c.load_positions()) == {}
        c.schedule_save()
