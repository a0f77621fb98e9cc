"""Tests for reference extraction, sanitation and the single rewrite pass."""

from __future__ import annotations

import hashlib
from pathlib import Path

import pytest

from DocsMirror.ContentSync.download import AssetResolver
from DocsMirror.ContentSync.errors import FailureLog
from DocsMirror.ContentSync.references import (
    ReferencePass,
    count_expiring_refs,
    extract_references,
    has_expiring_refs,
    reference_diagnostics,
    sanitize_references,
)
from tests.content_sync.helpers import png_bytes

EXPIRING = "https://prod-files-secure.s3.us-west-2.amazonaws.com/ws/{name}.png?X-Amz-Signature=sig"


def test_extracts_in_document_order() -> None:
    text = (
        "Intro ![first](https://x/1.png)\n"
        "[![linked](https://x/2.png)](https://example.com/page)\n"
        "![third]( https://x/3.png )"
    )
    refs = extract_references(text)
    assert [ref.url for ref in refs] == ["https://x/1.png", "https://x/2.png", "https://x/3.png"]
    assert [ref.index for ref in refs] == [0, 1, 2]
    assert refs[1].link_url == "https://example.com/page"
    assert refs[0].alt == "first"
    assert text[refs[2].url_start : refs[2].url_end] == "https://x/3.png"


def test_with_url_swaps_only_the_image_target() -> None:
    text = "[![logo](https://x/logo.png)](https://example.com)"
    [ref] = extract_references(text)
    assert ref.with_url("/images/abc.png") == "[![logo](/images/abc.png)](https://example.com)"


def test_escaped_parentheses_in_url() -> None:
    [ref] = extract_references(r"![a](https://x/img\).png)")
    assert ref.url == "https://x/img).png"


def test_match_limit_caps_extraction() -> None:
    text = " ".join(f"![{n}](https://x/{n}.png)" for n in range(10))
    assert len(extract_references(text, limit=4)) == 4
    assert len(extract_references(text, limit=None)) == 10


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("![a]()", "**[Image: a]** *(Image URL was empty)*"),
        ("![b](undefined)", "**[Image: b]** *(Image URL was invalid)*"),
        ("![c](null)", "**[Image: c]** *(Image URL was invalid)*"),
        ("![d](broken link.png)", "**[Image: d]** *(Image URL contained whitespace)*"),
        ("![e](https://x/e.png)", "![e](https://x/e.png)"),
        ("no images here", "no images here"),
        ("", ""),
    ],
)
def test_sanitize(text: str, expected: str) -> None:
    assert sanitize_references(text) == expected


def test_diagnostics_count_markdown_and_html() -> None:
    text = (
        f"![a]({EXPIRING.format(name='a')})\n"
        f'<img src="{EXPIRING.format(name="b")}" alt="b">\n'
        "![c](/images/c.png)"
    )
    diagnostics = reference_diagnostics(text)
    assert diagnostics.total_references == 3
    assert diagnostics.markdown_references == 2
    assert diagnostics.html_references == 1
    assert diagnostics.expiring_references == 2
    assert all("X-Amz" not in sample for sample in diagnostics.expiring_samples)
    assert count_expiring_refs(text) == 2
    assert has_expiring_refs(text)
    assert not has_expiring_refs("![c](/images/c.png)")


@pytest.fixture
def resolver(asset_cache, asset_cfg, asset_server) -> AssetResolver:
    return AssetResolver(asset_cache, cfg=asset_cfg, client=asset_server.client(), sleep=lambda _s: None)


def test_pass_rewrites_successes_and_placeholders_failures(resolver, asset_server, tmp_path: Path) -> None:
    body = png_bytes()
    good = EXPIRING.format(name="good")
    bad = EXPIRING.format(name="bad")
    asset_server.add(good, body)
    asset_server.add(bad, b"gone", status=404)
    text = f"# Title\n![ok]({good})\n\n![lost]({bad})\n![local](/images/keep.png)\n"

    output, stats = ReferencePass(resolver, failure_log=FailureLog(tmp_path / "f.json")).run(
        text, item_id="page-1"
    )

    reference = f"/images/{hashlib.sha256(body).hexdigest()[:16]}.png"
    assert f"![ok]({reference})" in output
    assert "**[Image 2: lost]** *(Image failed to download)*" in output
    assert "<!-- Failed to download image: https://prod-files-secure.s3.us-west-2.amazonaws.com/ws/bad.png -->" in output
    assert "![local](/images/keep.png)" in output
    assert output.startswith("# Title\n")
    assert (stats.successes, stats.failures) == (1, 1)
    assert not has_expiring_refs(output)


def test_pass_placeholders_invalid_references_without_requests(resolver, asset_server) -> None:
    output, stats = ReferencePass(resolver).run("![x](ftp://host/a.png) and ![y](undefined)")
    assert output.count("*(Image failed to download)*") == 2
    assert stats.failures == 2
    assert sum(asset_server.calls.values()) == 0


def test_pass_without_references_is_identity(resolver) -> None:
    text = "Plain text with a [link](https://example.com)."
    output, stats = ReferencePass(resolver)(text)
    assert output == text
    assert stats == type(stats)()


def test_bound_pass_accumulates_metrics(resolver, asset_server) -> None:
    url = EXPIRING.format(name="m")
    asset_server.add(url, png_bytes())
    bound = ReferencePass(resolver).for_item("page-9", "2024-01-01T00:00:00Z")
    output, stats = bound(f"![m]({url})")
    assert stats.successes == 1
    assert bound.metrics.as_dict()["skipped_small_size"] == 1
    assert output.startswith("![m](/images/")
