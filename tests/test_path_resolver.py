# tests/test_path_resolver.py
"""
Tests for PathResolver: template substitution and path safety.
"""
from datetime import datetime
from pathlib import Path

import pytest

from aiwg_workspace.errors import (
    ErrorKind,
    ForbiddenPathError,
    MissingPlaceholderError,
    PathSecurityError,
    PathTraversalError,
    UnsafeCharacterError,
)
from aiwg_workspace.security.paths import PathResolver


@pytest.fixture
def resolver(tmp_path: Path) -> PathResolver:
    return PathResolver(tmp_path / ".aiwg", clock=lambda: datetime(2025, 3, 9))


class TestResolve:
    """Tests for placeholder substitution."""

    def test_resolves_context_placeholders(self, resolver):
        path = resolver.resolve(
            "frameworks/{framework-id}/projects/{project-id}/requirements",
            {"framework-id": "sdlc-complete", "project-id": "my-app"},
        )
        assert path == "frameworks/sdlc-complete/projects/my-app/requirements"

    def test_accepts_snake_case_context_keys(self, resolver):
        path = resolver.resolve("frameworks/{framework-id}/repo", {"framework_id": "sdlc"})
        assert path == "frameworks/sdlc/repo"

    def test_computed_year_month(self, resolver):
        path = resolver.resolve("frameworks/{framework-id}/archive/{YYYY-MM}", {"framework_id": "f"})
        assert path == "frameworks/f/archive/2025-03"

    def test_missing_value_lists_supported_names(self, resolver):
        with pytest.raises(MissingPlaceholderError) as exc_info:
            resolver.resolve("frameworks/{framework-id}/projects/{project-id}", {"framework-id": "f"})
        err = exc_info.value
        assert err.placeholder == "project-id"
        assert "framework-id" in err.available
        assert "YYYY-MM" in err.available
        assert err.kind == ErrorKind.MISSING_PLACEHOLDER

    def test_unknown_placeholder_raises(self, resolver):
        with pytest.raises(MissingPlaceholderError):
            resolver.resolve("frameworks/{mystery}", {"mystery": "x"})

    def test_malformed_placeholder_never_survives(self, resolver):
        # `{a b}` is not placeholder syntax, so braces reach validation
        with pytest.raises(UnsafeCharacterError):
            resolver.resolve("frameworks/{a b}/repo", {})

    def test_substituted_traversal_is_rejected(self, resolver):
        with pytest.raises(PathTraversalError):
            resolver.resolve("frameworks/{framework-id}/repo", {"framework-id": ".."})

    def test_substituted_braces_are_not_reexpanded(self, resolver):
        with pytest.raises(UnsafeCharacterError):
            resolver.resolve("frameworks/{framework-id}", {"framework-id": "{project-id}"})

    def test_resolve_batch(self, resolver):
        paths = resolver.resolve_batch(
            ["frameworks/{framework-id}/repo", "frameworks/{framework-id}/working"],
            {"framework-id": "f"},
        )
        assert paths == ["frameworks/f/repo", "frameworks/f/working"]

    def test_resolve_absolute(self, resolver, tmp_path):
        path = resolver.resolve_absolute("frameworks/{framework-id}/repo", {"framework-id": "f"})
        assert path == (tmp_path / ".aiwg").resolve() / "frameworks" / "f" / "repo"

    def test_extract_placeholders_in_order(self):
        names = PathResolver.extract_placeholders("{framework-id}/{project-id}/{framework-id}")
        assert names == ["framework-id", "project-id"]


class TestValidatePath:
    """Tests for the ordered security checks."""

    @pytest.mark.parametrize("path", ["../x", "a/../b", "a\\..\\b", "frameworks/.."])
    def test_rejects_traversal(self, resolver, path):
        with pytest.raises(PathTraversalError):
            resolver.validate_path(path)

    @pytest.mark.parametrize("path", ["/etc/passwd", "/home/user/file", "C:\\Windows\\x", "~/secrets"])
    def test_rejects_forbidden_locations(self, resolver, path):
        with pytest.raises(ForbiddenPathError):
            resolver.validate_path(path)

    def test_forbidden_message_names_location(self, resolver):
        with pytest.raises(ForbiddenPathError, match="/etc/"):
            resolver.validate_path("/etc/passwd")

    def test_rejects_null_byte(self, resolver):
        with pytest.raises(UnsafeCharacterError):
            resolver.validate_path("a\0b")

    @pytest.mark.parametrize("path", ["a;b", "a|b", "$(cmd)", "a*b"])
    def test_rejects_unsafe_characters(self, resolver, path):
        with pytest.raises(UnsafeCharacterError):
            resolver.validate_path(path)

    def test_traversal_checked_before_deny_list(self, resolver):
        with pytest.raises(PathTraversalError):
            resolver.validate_path("/etc/../x")

    def test_accepts_workspace_path(self, resolver):
        resolver.validate_path("frameworks/sdlc/projects/p1")

    def test_relative_path_with_system_name_is_allowed(self, resolver):
        resolver.validate_path("frameworks/sdlc/projects/p1/tmp/notes.md")

    def test_errors_share_a_kind(self, resolver):
        for bad in ("../x", "/etc/passwd", "a\0b"):
            with pytest.raises(PathSecurityError) as exc_info:
                resolver.validate_path(bad)
            assert exc_info.value.kind == ErrorKind.PATH_SECURITY

    def test_is_safe_never_raises(self, resolver):
        assert resolver.is_safe("frameworks/sdlc/repo")
        assert not resolver.is_safe("../x")
        assert not resolver.is_safe("/etc/passwd")
        assert not resolver.is_safe("a\0b")
        assert not resolver.is_safe("")


class TestHelpers:
    """Tests for normalization, tiers and absolute/relative conversion."""

    def test_normalize(self):
        assert PathResolver.normalize("frameworks\\f//repo/") == "frameworks/f/repo"
        assert PathResolver.normalize("/frameworks/f") == "frameworks/f"

    @pytest.mark.parametrize(
        "path,tier",
        [
            ("frameworks/f/repo/templates/a.md", "repo"),
            ("frameworks/f/projects/p", "projects"),
            ("frameworks/f/sprints", "sprints"),
            ("frameworks/f/unknown/x", None),
            ("shared/x", None),
            ("frameworks/f", None),
        ],
    )
    def test_detect_tier(self, resolver, path, tier):
        assert resolver.detect_tier(path) == tier

    def test_to_absolute_validates(self, resolver):
        with pytest.raises(PathTraversalError):
            resolver.to_absolute("../escape")

    def test_round_trip_relative(self, resolver):
        absolute = resolver.to_absolute("frameworks/f/repo")
        assert resolver.to_relative(absolute) == "frameworks/f/repo"

    def test_to_relative_outside_root(self, resolver, tmp_path):
        with pytest.raises(PathTraversalError):
            resolver.to_relative(tmp_path / "elsewhere")
