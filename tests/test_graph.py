"""
DAG Flow — Dependency Graph Tests

Tests:
  - Registration: duplicate nodes, edges to unknown nodes
  - Queries: dependencies, dependents, roots, edges
  - get_ready returns exactly the unresolved nodes whose deps are resolved
  - topological_sort respects every edge, in registration order for ties
  - Cycle detection names a node on the cycle, including self-loops
  - Deep chains do not hit the recursion limit
"""

import os
import random
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from dagflow.errors import CycleError, DuplicateNodeError, UnknownNodeError, ValidationError
from dagflow.graph import Graph


def _graph(nodes, edges=()):
    g = Graph()
    for n in nodes:
        g.add_node(n)
    for a, b in edges:
        g.add_edge(a, b)
    return g


class TestRegistration(unittest.TestCase):
    """add_node / add_edge bookkeeping."""

    def test_duplicate_node_rejected(self):
        g = _graph(["a"])
        with self.assertRaises(DuplicateNodeError) as ctx:
            g.add_node("a")
        self.assertEqual(ctx.exception.node, "a")
        self.assertIsInstance(ctx.exception, ValidationError)

    def test_edge_from_unknown_node(self):
        g = _graph(["a"])
        with self.assertRaises(UnknownNodeError) as ctx:
            g.add_edge("ghost", "a")
        self.assertEqual(ctx.exception.node, "ghost")

    def test_edge_to_unknown_node(self):
        g = _graph(["a"])
        with self.assertRaises(UnknownNodeError):
            g.add_edge("a", "ghost")

    def test_cycle_edges_are_accepted(self):
        g = _graph(["a", "b"], [("a", "b"), ("b", "a")])
        self.assertEqual(g.edges(), [("b", "a"), ("a", "b")])

    def test_node_count_and_membership(self):
        g = _graph(["a", "b", "c"])
        self.assertEqual(g.node_count, 3)
        self.assertEqual(len(g), 3)
        self.assertIn("b", g)
        self.assertNotIn("z", g)
        self.assertEqual(list(g), ["a", "b", "c"])


class TestQueries(unittest.TestCase):

    def setUp(self):
        # source → {left, right} → join
        self.g = _graph(
            ["source", "left", "right", "join"],
            [("source", "left"), ("source", "right"), ("left", "join"), ("right", "join")],
        )

    def test_dependencies(self):
        self.assertEqual(self.g.get_dependencies("join"), {"left", "right"})
        self.assertEqual(self.g.get_dependencies("source"), set())

    def test_dependencies_unknown_node(self):
        with self.assertRaises(UnknownNodeError):
            self.g.get_dependencies("ghost")

    def test_dependencies_is_a_copy(self):
        self.g.get_dependencies("join").add("source")
        self.assertEqual(self.g.get_dependencies("join"), {"left", "right"})

    def test_dependents(self):
        self.assertEqual(self.g.get_dependents("source"), ["left", "right"])
        self.assertEqual(self.g.get_dependents("join"), [])

    def test_roots(self):
        self.assertEqual(self.g.get_roots(), ["source"])

    def test_roots_in_registration_order(self):
        g = _graph(["z", "a", "m"], [("z", "m")])
        self.assertEqual(g.get_roots(), ["z", "a"])

    def test_ready_initially_roots(self):
        self.assertEqual(self.g.get_ready(set()), ["source"])

    def test_ready_after_source(self):
        self.assertEqual(self.g.get_ready({"source"}), ["left", "right"])

    def test_ready_waits_for_all_dependencies(self):
        self.assertEqual(self.g.get_ready({"source", "left"}), ["right"])
        self.assertEqual(self.g.get_ready({"source", "left", "right"}), ["join"])

    def test_ready_excludes_resolved(self):
        self.assertEqual(self.g.get_ready({"source", "left", "right", "join"}), [])

    def test_ready_matches_definition_on_random_graphs(self):
        rng = random.Random(7)
        for _ in range(25):
            nodes = [f"n{i}" for i in range(8)]
            edges = {(nodes[i], nodes[j]) for i in range(8) for j in range(i + 1, 8)
                     if rng.random() < 0.3}
            g = _graph(nodes, sorted(edges))
            resolved = {n for n in nodes if rng.random() < 0.5}
            expected = [n for n in nodes
                        if n not in resolved and g.get_dependencies(n) <= resolved]
            self.assertEqual(g.get_ready(resolved), expected)


class TestTopologicalSort(unittest.TestCase):

    def _assert_consistent(self, g, order):
        self.assertEqual(sorted(order), sorted(g.nodes))
        for a, b in g.edges():
            self.assertLess(order.index(a), order.index(b), f"{a} -> {b}")

    def test_chain(self):
        g = _graph(["a", "b", "c"], [("a", "b"), ("b", "c")])
        self.assertEqual(g.topological_sort(), ["a", "b", "c"])

    def test_registered_out_of_order(self):
        g = _graph(["c", "b", "a"], [("a", "b"), ("b", "c"), ("a", "c")])
        self._assert_consistent(g, g.topological_sort())

    def test_independent_nodes_keep_registration_order(self):
        g = _graph(["x", "y", "z"])
        self.assertEqual(g.topological_sort(), ["x", "y", "z"])

    def test_random_dags(self):
        rng = random.Random(11)
        for _ in range(25):
            nodes = [f"n{i}" for i in range(10)]
            rng.shuffle(nodes)
            g = Graph()
            for n in nodes:
                g.add_node(n)
            ranked = sorted(nodes)
            for i in range(10):
                for j in range(i + 1, 10):
                    if rng.random() < 0.25:
                        g.add_edge(ranked[i], ranked[j])
            self._assert_consistent(g, g.topological_sort())

    def test_deep_chain_no_recursion_error(self):
        n = sys.getrecursionlimit() + 500
        g = Graph()
        for i in range(n):
            g.add_node(f"s{i}")
        for i in range(1, n):
            g.add_edge(f"s{i - 1}", f"s{i}")
        order = g.topological_sort()
        self.assertEqual(order[0], "s0")
        self.assertEqual(order[-1], f"s{n - 1}")


class TestCycleDetection(unittest.TestCase):

    def test_two_node_cycle(self):
        g = _graph(["a", "b"], [("a", "b"), ("b", "a")])
        with self.assertRaises(CycleError) as ctx:
            g.topological_sort()
        self.assertIn(ctx.exception.node, {"a", "b"})

    def test_three_node_cycle_names_cycle_member(self):
        g = _graph(["a", "b", "c"], [("a", "b"), ("b", "c"), ("c", "a")])
        with self.assertRaises(CycleError) as ctx:
            g.topological_sort()
        err = ctx.exception
        self.assertIn(err.node, {"a", "b", "c"})
        self.assertEqual(err.cycle[0], err.cycle[-1])
        self.assertEqual(set(err.cycle), {"a", "b", "c"})

    def test_cycle_path_follows_edges(self):
        g = _graph(["a", "b", "c"], [("a", "b"), ("b", "c"), ("c", "a")])
        with self.assertRaises(CycleError) as ctx:
            g.topological_sort()
        edges = set(g.edges())
        path = ctx.exception.cycle
        for frm, to in zip(path, path[1:]):
            self.assertIn((frm, to), edges)

    def test_self_loop(self):
        g = _graph(["a"], [("a", "a")])
        with self.assertRaises(CycleError) as ctx:
            g.topological_sort()
        self.assertEqual(ctx.exception.node, "a")

    def test_cycle_behind_acyclic_prefix(self):
        g = _graph(["root", "x", "y"], [("root", "x"), ("x", "y"), ("y", "x")])
        with self.assertRaises(CycleError) as ctx:
            g.topological_sort()
        self.assertIn(ctx.exception.node, {"x", "y"})
        self.assertIn("Circular dependency", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
