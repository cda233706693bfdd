import pytest

from pdfassembly.errors import InvalidInputError
from pdfassembly.outline import (
    Bookmark,
    DescendantsOnly,
    HierarchyMode,
    MergedDocumentInfo,
    NamedDestination,
    NoOutline,
    ThisOnly,
    WholeHierarchy,
    apply_bookmark_styles,
    assemble_outline,
    build_contribution,
    count_bookmarks,
    create_document_bookmark,
    merge_adjacent,
    shift_bookmarks,
    shift_destinations,
)


def _info(title, mode, bookmarks=None, start_page=1, styles=None) -> MergedDocumentInfo:
    return MergedDocumentInfo(
        title=title,
        start_page=start_page,
        bookmarks=list(bookmarks or []),
        hierarchy_mode=mode,
        bookmark_styles=styles,
    )


@pytest.mark.parametrize(
    "value",
    ["whole_hierarchy", "WholeHierarchy", "wholehierarchy", 3, "3", HierarchyMode.WHOLE_HIERARCHY],
)
def test_hierarchy_mode_parse_accepts_all_spellings(value) -> None:
    """Values, CamelCase names and integer codes all parse."""
    assert HierarchyMode.parse(value) is HierarchyMode.WHOLE_HIERARCHY


def test_hierarchy_mode_parse_rejects_unknown() -> None:
    """Unknown modes are invalid input."""
    with pytest.raises(InvalidInputError):
        HierarchyMode.parse("Everything")
    with pytest.raises(InvalidInputError):
        HierarchyMode.parse(7)


def test_document_bookmark_defaults() -> None:
    """The synthetic node is black, open and jumps to the start page."""
    node = create_document_bookmark("Report", 4)
    assert node.title == "Report"
    assert node.page == 4
    assert node.color == (0.0, 0.0, 0.0)
    assert node.is_open is True
    assert node.has_destination
    assert node.kids is None


def test_bookmark_styles_set_and_remove_attributes() -> None:
    """Non-null overrides replace attributes and null overrides remove them."""
    node = create_document_bookmark(
        "Report",
        2,
        {"Color": "1 0 0", "Open": None, "Style": "bold italic", "Custom": "x"},
    )
    assert node.color == (1.0, 0.0, 0.0)
    assert node.is_open is None
    assert node.bold and node.italic
    assert node.extra == {"Custom": "x"}

    apply_bookmark_styles(node, {"Color": None, "Custom": None, "Page": "7 /Fit"})
    assert node.color is None
    assert node.extra == {}
    assert node.page == 7
    assert node.fit_type == "/Fit"


def test_removing_action_drops_destination() -> None:
    """A node without a GoTo action has no destination."""
    node = create_document_bookmark("Report", 2, {"Action": None})
    assert not node.has_destination


def test_removing_title_is_invalid() -> None:
    """A bookmark must keep its title."""
    with pytest.raises(InvalidInputError):
        create_document_bookmark("Report", 1, {"Title": None})


def test_invalid_color_is_rejected() -> None:
    """Colors need three numeric components."""
    with pytest.raises(InvalidInputError):
        create_document_bookmark("Report", 1, {"Color": "red"})


def test_build_contribution_per_mode() -> None:
    """Each hierarchy mode yields its own contribution variant."""
    native = [Bookmark("Chapter 1", page=3)]

    assert isinstance(build_contribution(_info("A", HierarchyMode.NONE, native)), NoOutline)

    this_only = build_contribution(_info("A", HierarchyMode.THIS_ONLY, native, start_page=3))
    assert isinstance(this_only, ThisOnly)
    assert this_only.node.title == "A"
    assert this_only.node.page == 3
    assert this_only.node.kids is None

    descendants = build_contribution(_info("A", HierarchyMode.DESCENDANTS_ONLY, native))
    assert isinstance(descendants, DescendantsOnly)
    assert [child.title for child in descendants.children] == ["Chapter 1"]

    whole = build_contribution(_info("A", HierarchyMode.WHOLE_HIERARCHY, native))
    assert isinstance(whole, WholeHierarchy)
    assert [child.title for child in whole.node.kids] == ["Chapter 1"]


def test_whole_hierarchy_node_always_owns_kids() -> None:
    """A WholeHierarchy node without native outline still has an empty kids list."""
    whole = build_contribution(_info("A", HierarchyMode.WHOLE_HIERARCHY))
    assert whole.node.kids == []


def test_merge_adjacent_appends_kids() -> None:
    """Equal titles fold the current node's kids into the previous node."""
    previous = Bookmark("Invoices", page=1, kids=[Bookmark("January", page=1)])
    current = Bookmark("Invoices", page=3, kids=[Bookmark("February", page=3)])
    assert merge_adjacent(previous, current)
    assert [kid.title for kid in previous.kids] == ["January", "February"]
    assert current.kids is None


def test_merge_adjacent_creates_kids_on_previous() -> None:
    """A previous node without kids gets a list for the merged children."""
    previous = Bookmark("Invoices", page=1)
    current = Bookmark("Invoices", page=2, kids=[Bookmark("March", page=2)])
    assert merge_adjacent(previous, current)
    assert [kid.title for kid in previous.kids] == ["March"]


def test_merge_adjacent_requires_exact_title() -> None:
    """Titles compare case-sensitively and missing nodes never merge."""
    assert not merge_adjacent(Bookmark("Invoices"), Bookmark("invoices"))
    assert not merge_adjacent(None, Bookmark("Invoices"))
    assert not merge_adjacent(Bookmark("Invoices"), None)


def test_assemble_outline_merges_adjacent_titles() -> None:
    """Adjacent documents with the same title become one entry."""
    outline = assemble_outline(
        [
            _info("Invoices", HierarchyMode.WHOLE_HIERARCHY, [Bookmark("Jan", page=1)], 1),
            _info("Invoices", HierarchyMode.WHOLE_HIERARCHY, [Bookmark("Feb", page=2)], 2),
        ]
    )
    assert [node.title for node in outline] == ["Invoices"]
    assert [kid.title for kid in outline[0].kids] == ["Jan", "Feb"]
    assert outline[0].page == 1


def test_assemble_outline_only_compares_consecutive_entries() -> None:
    """Same-title documents separated by another entry stay separate."""
    outline = assemble_outline(
        [
            _info("A", HierarchyMode.THIS_ONLY, start_page=1),
            _info("B", HierarchyMode.THIS_ONLY, start_page=2),
            _info("A", HierarchyMode.THIS_ONLY, start_page=3),
        ]
    )
    assert [node.title for node in outline] == ["A", "B", "A"]


def test_assemble_outline_descendants_only_splices_children() -> None:
    """DescendantsOnly children land at the top level and keep the last emitted node."""
    outline = assemble_outline(
        [
            _info("A", HierarchyMode.WHOLE_HIERARCHY, [Bookmark("A1", page=1)], 1),
            _info("D", HierarchyMode.DESCENDANTS_ONLY, [Bookmark("D1", page=2)], 2),
            _info("A", HierarchyMode.WHOLE_HIERARCHY, [Bookmark("A2", page=3)], 3),
        ]
    )
    assert [node.title for node in outline] == ["A", "D1"]
    assert [kid.title for kid in outline[0].kids] == ["A1", "A2"]


def test_assemble_outline_skips_none_mode() -> None:
    """Documents in None mode leave no trace in the outline."""
    outline = assemble_outline(
        [
            _info("A", HierarchyMode.NONE, [Bookmark("A1", page=1)], 1),
            _info("B", HierarchyMode.THIS_ONLY, start_page=2),
        ]
    )
    assert [node.title for node in outline] == ["B"]
    assert count_bookmarks(outline) == 1


def test_shift_bookmarks_moves_whole_tree() -> None:
    """Every page reference in the tree moves by the offset."""
    tree = [Bookmark("A", page=1, kids=[Bookmark("A.1", page=2), Bookmark("A.2")])]
    shift_bookmarks(tree, 5)
    assert tree[0].page == 6
    assert tree[0].kids[0].page == 7
    assert tree[0].kids[1].page is None
    assert count_bookmarks(tree) == 3


def test_shift_destinations_returns_new_mapping() -> None:
    """Named destinations are moved without touching the input."""
    original = {"intro": NamedDestination(page=1)}
    shifted = shift_destinations(original, 3)
    assert shifted["intro"].page == 4
    assert original["intro"].page == 1
