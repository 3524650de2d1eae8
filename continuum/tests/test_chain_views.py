import unittest

from continuum.models import ContinuationEdge, SessionRecord
from continuum.services.chain_resolver import resolve_chain
from continuum.services.chain_views import (
    build_chain_view,
    classify_highlight,
    collapse_breadcrumb,
    flatten_descendants,
    highlight_map,
    index_nodes,
    iter_preorder,
    linear_path,
    session_metadata,
    should_render_as_tree,
)


def _chain(edges: list[tuple[str, str, int]], root: str = "a"):
    ids = {root}
    for child, parent, _order in edges:
        ids.update((child, parent))
    sessions = {sid: SessionRecord(sessionId=sid) for sid in ids}
    return resolve_chain(
        root,
        [ContinuationEdge(childId=c, parentId=p, order=o) for c, p, o in edges],
        sessions,
    )


# a ─ b ─┬─ c ─ e
#        └─ d
BRANCHED = [("b", "a", 0), ("c", "b", 0), ("d", "b", 1), ("e", "c", 0)]


class LinearPathTests(unittest.TestCase):
    def test_path_lists_nodes_root_first_with_branch_points(self) -> None:
        chain = _chain(BRANCHED)

        path = linear_path(chain, "e")

        assert path is not None
        self.assertEqual(path.sessionIds, ["a", "b", "c", "e"])
        self.assertEqual(path.length, 4)
        self.assertEqual([bp.branchPointId for bp in path.branchPoints], ["b"])
        self.assertEqual(path.branchPoints[0].siblingIds, ["c", "d"])
        self.assertEqual(path.branchPoints[0].branchCount, 2)
        self.assertFalse(path.isActivePath)

    def test_branch_point_target_is_not_listed_as_crossed(self) -> None:
        path = linear_path(_chain(BRANCHED), "b")

        assert path is not None
        self.assertEqual(path.branchPoints, [])

    def test_unknown_target_returns_none(self) -> None:
        self.assertIsNone(linear_path(_chain(BRANCHED), "zz"))


class BreadcrumbTests(unittest.TestCase):
    def test_seven_node_path_collapses_middle(self) -> None:
        ids = ["n1", "n2", "n3", "n4", "n5", "n6", "n7"]
        chain = _chain([(ids[i], ids[i - 1], 0) for i in range(1, 7)], root="n1")
        path = linear_path(chain, "n7")
        assert path is not None

        crumb = collapse_breadcrumb(path, 5)

        self.assertEqual(len(crumb.segments), 4)
        self.assertEqual(crumb.hiddenCount, 4)
        root, collapsed, parent, current = crumb.segments
        self.assertTrue(root.isRoot)
        self.assertEqual(root.sessionId, "n1")
        self.assertEqual(collapsed.type, "collapsed")
        self.assertEqual(collapsed.hiddenIds, ["n2", "n3", "n4", "n5"])
        self.assertEqual(parent.sessionId, "n6")
        self.assertTrue(current.isCurrent)
        self.assertEqual(current.sessionId, "n7")

    def test_short_path_is_fully_visible(self) -> None:
        path = linear_path(_chain(BRANCHED), "e")
        assert path is not None

        crumb = collapse_breadcrumb(path, 5)

        self.assertEqual([s.sessionId for s in crumb.segments], ["a", "b", "c", "e"])
        self.assertEqual(crumb.hiddenCount, 0)
        self.assertTrue(crumb.segments[1].isBranchPoint)


class HighlightTests(unittest.TestCase):
    def setUp(self) -> None:
        self.chain = _chain(BRANCHED)

    def test_roles_relative_to_selection(self) -> None:
        self.assertEqual(classify_highlight(self.chain, "c", "c"), "clicked")
        self.assertEqual(classify_highlight(self.chain, "c", "a"), "ancestor")
        self.assertEqual(classify_highlight(self.chain, "c", "b"), "ancestor")
        self.assertEqual(classify_highlight(self.chain, "c", "e"), "descendant")
        self.assertEqual(classify_highlight(self.chain, "c", "d"), "sibling")
        self.assertEqual(classify_highlight(self.chain, "c", "elsewhere"), "none")

    def test_highlight_map_positions_and_distances(self) -> None:
        result = highlight_map(self.chain, "c")

        self.assertEqual([result[s].position for s in ["a", "b", "c", "e", "d"]], [1, 2, 3, 4, 5])
        self.assertEqual({info.total for info in result.values()}, {5})
        self.assertEqual(result["a"].distance, -2)
        self.assertEqual(result["b"].distance, -1)
        self.assertEqual(result["c"].distance, 0)
        self.assertEqual(result["e"].distance, 1)
        self.assertEqual(result["d"].role, "sibling")
        self.assertEqual(result["d"].distance, 0)
        self.assertTrue(result["a"].isRoot)

    def test_highlight_map_for_unknown_selection_is_empty(self) -> None:
        self.assertEqual(highlight_map(self.chain, "zz"), {})


class ViewModeTests(unittest.TestCase):
    def test_branching_chain_renders_as_tree(self) -> None:
        chain = _chain(BRANCHED)

        view = build_chain_view(chain)

        self.assertTrue(should_render_as_tree(chain.root))
        self.assertEqual(view.mode, "tree")
        self.assertIsNotNone(view.tree)
        self.assertEqual(view.sessionIds, ["a", "b", "c", "e", "d"])

    def test_linear_chain_renders_as_list(self) -> None:
        chain = _chain([("b", "a", 0), ("c", "b", 0)])

        view = build_chain_view(chain)

        self.assertEqual(view.mode, "linear")
        self.assertIsNone(view.tree)
        self.assertEqual(view.sessionIds, ["a", "b", "c"])

    def test_flatten_descendants_and_index(self) -> None:
        chain = _chain(BRANCHED)

        flat = flatten_descendants(chain, "b")

        self.assertEqual([f.sessionId for f in flat], ["c", "e", "d"])
        self.assertEqual([f.depth for f in flat], [2, 3, 2])
        self.assertEqual(flat[1].parentId, "c")
        self.assertEqual(set(index_nodes(chain)), {"a", "b", "c", "d", "e"})
        self.assertEqual([n.sessionId for n in iter_preorder(chain.root)], ["a", "b", "c", "e", "d"])
        self.assertEqual(flatten_descendants(chain, "zz"), [])


class SessionMetadataTests(unittest.TestCase):
    def test_metadata_describes_node_position(self) -> None:
        chain = _chain(BRANCHED)

        root = session_metadata(chain, "a")
        branch = session_metadata(chain, "b")
        second = session_metadata(chain, "d")

        self.assertFalse(root.isChild)
        self.assertTrue(root.isParent)
        self.assertEqual(branch.continuationOf, "a")
        self.assertEqual(branch.childCount, 2)
        self.assertEqual((second.depth, second.position, second.childCount), (2, 1, 0))
        self.assertEqual(second.rootId, "a")
        self.assertIsNone(session_metadata(chain, "zz"))


if __name__ == "__main__":
    unittest.main()
