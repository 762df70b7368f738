"""Tests for tree-by-tree vine structure selection."""
import unittest
from unittest import mock

import torch

import torchrvine as tv


def _gaussian_chain(n=500, rhos=(0.8, 0.7, 0.6), seed=0):
    """Markov chain X0 -> X1 -> X2 -> X3 with the given lag-one correlations."""
    g = torch.Generator().manual_seed(seed)
    z = torch.randn(n, len(rhos) + 1, generator=g, dtype=torch.float64)
    x = torch.empty_like(z)
    x[:, 0] = z[:, 0]
    for j, r in enumerate(rhos, start=1):
        x[:, j] = r * x[:, j - 1] + (1.0 - r * r) ** 0.5 * z[:, j]
    return tv.rank_normalize(x)


def _pairs(tree):
    return {e.conditioned for e in tree.edges()}


class TestDependenceGraph(unittest.TestCase):

    def setUp(self):
        self.data = _gaussian_chain()

    def test_complete_graph_weighted_by_tau(self):
        g = tv.dependence_graph(self.data)
        self.assertEqual(g.num_nodes(), 4)
        self.assertEqual(g.num_edges(), 6)
        for e in g.edges():
            i, j = e.conditioned
            with self.subTest(pair=(i, j)):
                self.assertAlmostEqual(e.weight, tv.kendall_tau(self.data[:, i], self.data[:, j]), places=14)

    def test_rejects_bad_shapes(self):
        with self.assertRaises(ValueError):
            tv.dependence_graph(self.data[:, 0])
        with self.assertRaises(ValueError):
            tv.dependence_graph(self.data, nodes=[tv.Node(0, (0,))])


class TestSelectTree(unittest.TestCase):

    def setUp(self):
        self.data = _gaussian_chain()
        self.controls = tv.FitControlsVinecop(family_set=["indep", "gaussian"])

    def test_first_tree_follows_the_chain(self):
        vt = tv.select_tree(self.data, self.controls, torch.Generator().manual_seed(0))
        self.assertEqual(vt.level, 0)
        self.assertEqual(_pairs(vt.tree), {(0, 1), (1, 2), (2, 3)})
        for e in vt.tree.edges():
            cop = vt.pair_copulas[e]
            with self.subTest(edge=e.conditioned):
                self.assertEqual(cop.family, tv.BicopFamily.gaussian)
                self.assertEqual(tuple(vt.pair_data[e].shape), (500, 2))
        e01 = next(e for e in vt.tree.edges() if e.conditioned == (0, 1))
        self.assertAlmostEqual(vt.pair_copulas[e01].parameters.item(), 0.8, delta=0.05)

    def test_start_node_does_not_change_tree(self):
        t1 = tv.select_tree(self.data, self.controls, torch.Generator().manual_seed(1))
        t2 = tv.select_tree(self.data, self.controls, torch.Generator().manual_seed(2))
        self.assertEqual(_pairs(t1.tree), _pairs(t2.tree))

    def test_threshold_forces_independence(self):
        controls = tv.FitControlsVinecop(family_set=["gaussian"], threshold=0.99)
        vt = tv.select_tree(self.data, controls)
        for e in vt.tree.edges():
            self.assertEqual(vt.pair_copulas[e].family, tv.BicopFamily.indep)

    def test_graph_requires_pair_data(self):
        g = tv.dependence_graph(self.data)
        with self.assertRaises(ValueError):
            tv.select_tree(None, self.controls, graph=g)
        with self.assertRaises(ValueError):
            tv.select_tree(None, self.controls)

    def test_trace_logs_each_edge(self):
        logger = mock.Mock()
        controls = tv.FitControlsVinecop(family_set=["indep", "gaussian"], show_trace=True)
        tv.select_tree(self.data, controls, logger=logger)
        events = [c[0][0] for c in logger.info.call_args_list]
        self.assertEqual(events.count("edge_selected"), 3)

    def test_str(self):
        vt = tv.select_tree(self.data, self.controls)
        text = vt.str()
        self.assertTrue(text.startswith("<torchrvine.VineTree> level 0"))
        self.assertIn("0,1: tau=", text)
        self.assertIn("gaussian", text)


class TestProximity(unittest.TestCase):

    def setUp(self):
        self.data = _gaussian_chain()
        self.controls = tv.FitControlsVinecop(family_set=["indep", "gaussian"])
        self.vt = tv.select_tree(self.data, self.controls)

    def test_next_level_nodes_merge_indices(self):
        nodes = tv.next_level_nodes(self.vt.tree)
        self.assertEqual(sorted(n.indices for n in nodes.values()), [(0, 1), (1, 2), (2, 3)])

    def test_next_level_samples_are_h_functions(self):
        samples = tv.next_level_samples(self.vt)
        for e, (h1, h2) in samples.items():
            cop = self.vt.pair_copulas[e]
            pair = self.vt.pair_data[e]
            self.assertTrue(torch.equal(h1, cop.hfunc1(pair)))
            self.assertTrue(torch.equal(h2, cop.hfunc2(pair)))

    def test_only_adjacent_edges_are_joined(self):
        g, pair_data = tv.proximity_graph(self.vt)
        self.assertEqual(g.num_nodes(), 3)
        # a path 0-1-2-3 has two pairs of adjacent edges
        self.assertEqual(g.num_edges(), 2)
        for e in g.edges():
            with self.subTest(edge=e.conditioned):
                self.assertEqual(len(e.conditioning), 1)
                self.assertEqual(len(e.conditioned), 2)
                self.assertIn(e, pair_data)
                self.assertEqual(tuple(pair_data[e].shape), (500, 2))
        self.assertEqual(_pairs(g), {(0, 2), (1, 3)})

    def test_conditional_pairs_are_nearly_independent(self):
        # Markov chain: X0 and X2 are independent given X1
        g, _ = tv.proximity_graph(self.vt)
        for e in g.edges():
            self.assertLess(abs(e.weight), 0.1)


class TestSelectStructure(unittest.TestCase):

    def setUp(self):
        self.data = _gaussian_chain()

    def test_full_vine(self):
        controls = tv.FitControlsVinecop(family_set=["indep", "gaussian"])
        trees = tv.select_structure(self.data, controls, generator=torch.Generator().manual_seed(0))
        self.assertEqual([t.level for t in trees], [0, 1, 2])
        self.assertEqual([t.tree.num_edges() for t in trees], [3, 2, 1])
        last = trees[-1].tree.edges()[0]
        self.assertEqual(last.conditioned, (0, 3))
        self.assertEqual(last.conditioning, (1, 2))

    def test_truncation(self):
        controls = tv.FitControlsVinecop(family_set=["indep", "gaussian"])
        self.assertEqual(len(tv.select_structure(self.data, controls, trunc_lvl=1)), 1)
        self.assertEqual(tv.select_structure(self.data, controls, trunc_lvl=0), [])

    def test_threshold_prunes_higher_trees(self):
        controls = tv.FitControlsVinecop(family_set=["indep", "gaussian"], threshold=0.1)
        trees = tv.select_structure(self.data, controls)
        for t in trees[1:]:
            for e in t.tree.edges():
                with self.subTest(level=t.level, edge=e.conditioned):
                    self.assertEqual(t.pair_copulas[e].family, tv.BicopFamily.indep)

    def test_single_column(self):
        self.assertEqual(tv.select_structure(self.data[:, :1]), [])


if __name__ == "__main__":
    unittest.main()
