from pdfassembly.geometry import (
    PageRect,
    PageSize,
    is_landscape,
    parse_page_size,
    resolve_page_size,
    resolve_page_size_or_default,
)


def test_resolve_page_size_portrait_and_landscape() -> None:
    """Landscape swaps the table dimensions."""
    assert resolve_page_size(PageSize.A4) == PageRect(595, 842)
    assert resolve_page_size("A4", is_landscape=True) == PageRect(842, 595)
    assert resolve_page_size(PageSize.LETTER) == PageRect(612, 792)


def test_page_size_lookup_is_case_insensitive() -> None:
    """Identifiers are matched regardless of case and surrounding spaces."""
    assert parse_page_size(" legal ") is PageSize.LEGAL
    assert resolve_page_size("postcard") == PageRect(283, 416)


def test_unknown_page_size_means_no_override() -> None:
    """Unknown identifiers resolve to None rather than failing."""
    assert resolve_page_size("C5") is None
    assert resolve_page_size(None) is None


def test_resolve_page_size_or_default_falls_back_to_a4() -> None:
    """Callers that need a page get A4 for unknown sizes."""
    assert resolve_page_size_or_default("unknown") == PageRect(595, 842)
    assert resolve_page_size_or_default("unknown", is_landscape=True) == PageRect(842, 595)


def test_is_landscape() -> None:
    """Only strictly wider pages are landscape."""
    assert is_landscape(PageRect(842, 595))
    assert not is_landscape(PageRect(595, 842))
    assert not is_landscape(PageRect(300, 300))
