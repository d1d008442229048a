"""Security integration tests for the secure filesystem server.

These tests verify that the sandbox holds:
- Path traversal prevention
- Symlink escape prevention
- Sibling-prefix directories are not treated as inside a root
- Symlink cycles terminate
- Error messages do not leak resolved paths

IMPORTANT: No mocks - these are real integration tests on a temp directory.
"""

import os

import pytest

from conftest import error_payload
from sandbox import AllowedRoots, ConfigurationError, OutOfBounds, PathGuard


class TestPathTraversalPrevention:
    """Tests for path traversal attack prevention."""

    def test_path_inside_root_is_allowed(self, guard, workspace):
        """Verify a plain path inside the root validates to itself."""
        (workspace / "a.txt").write_text("hello")
        assert guard.validate(str(workspace / "a.txt")) == workspace / "a.txt"

    def test_root_itself_is_allowed(self, guard, workspace):
        assert guard.validate(str(workspace)) == workspace

    def test_absolute_path_outside_blocked(self, guard, outside):
        with pytest.raises(OutOfBounds):
            guard.validate(str(outside / "secret.txt"))

    def test_etc_passwd_blocked(self, guard):
        with pytest.raises(OutOfBounds):
            guard.validate("/etc/passwd")

    def test_dotdot_traversal_blocked(self, guard, workspace):
        """Verify ../ segments cannot climb out of the root."""
        with pytest.raises(OutOfBounds):
            guard.validate(str(workspace / ".." / "outside" / "secret.txt"))

    def test_dotdot_staying_inside_allowed(self, guard, workspace):
        (workspace / "sub").mkdir()
        (workspace / "b.txt").write_text("b")
        assert guard.validate(str(workspace / "sub" / ".." / "b.txt")) == workspace / "b.txt"

    def test_relative_path_resolves_against_first_root(self, guard, workspace):
        (workspace / "rel.txt").write_text("x")
        assert guard.validate("rel.txt") == workspace / "rel.txt"

    def test_relative_dotdot_blocked(self, guard):
        with pytest.raises(OutOfBounds):
            guard.validate("../outside/secret.txt")

    def test_sibling_prefix_directory_blocked(self, tmp_path):
        """Verify /data does not admit /data-other (segment comparison, not substring)."""
        data = tmp_path / "data"
        data_other = tmp_path / "data-other"
        data.mkdir()
        data_other.mkdir()
        (data_other / "x.txt").write_text("x")
        guard = PathGuard(AllowedRoots.from_args([str(data)]))

        with pytest.raises(OutOfBounds):
            guard.validate(str(data_other / "x.txt"))


class TestSymlinkPrevention:
    """Tests for symlink-based escapes."""

    def test_symlinked_file_pointing_outside_blocked(self, guard, workspace, outside):
        link = workspace / "escape.txt"
        link.symlink_to(outside / "secret.txt")
        with pytest.raises(OutOfBounds):
            guard.validate(str(link))

    def test_symlinked_directory_pointing_outside_blocked(self, guard, workspace, outside):
        link = workspace / "escape_dir"
        link.symlink_to(outside, target_is_directory=True)
        with pytest.raises(OutOfBounds):
            guard.validate(str(link / "secret.txt"))

    def test_new_file_under_escaping_symlink_blocked(self, guard, workspace, outside):
        """Verify a not-yet-existing file is checked through its real parent."""
        link = workspace / "escape_dir"
        link.symlink_to(outside, target_is_directory=True)
        with pytest.raises(OutOfBounds):
            guard.validate(str(link / "new.txt"))

    def test_dangling_symlink_to_outside_blocked(self, guard, workspace, outside):
        link = workspace / "dangling"
        link.symlink_to(outside / "does-not-exist.txt")
        with pytest.raises(OutOfBounds):
            guard.validate(str(link))

    def test_symlink_inside_root_resolves_to_real_path(self, guard, workspace):
        (workspace / "real.txt").write_text("real")
        (workspace / "alias.txt").symlink_to(workspace / "real.txt")
        assert guard.validate(str(workspace / "alias.txt")) == workspace / "real.txt"

    def test_outside_symlink_into_root_allowed(self, guard, workspace, outside):
        """A path that resolves into a root is accepted even if it is spelled outside."""
        (workspace / "target.txt").write_text("t")
        link = outside / "into_workspace.txt"
        link.symlink_to(workspace / "target.txt")
        assert guard.validate(str(link)) == workspace / "target.txt"

    def test_recheck_catches_retargeted_symlink(self, guard, workspace, outside):
        """Verify re-validation before a write notices a swapped symlink."""
        (workspace / "inside.txt").write_text("inside")
        link = workspace / "link.txt"
        link.symlink_to(workspace / "inside.txt")
        guard.validate(str(link))

        link.unlink()
        link.symlink_to(outside / "secret.txt")
        with pytest.raises(OutOfBounds):
            guard.recheck(link)


class TestNonExistentPaths:
    """Tests for paths that do not exist yet."""

    def test_new_file_in_existing_dir_allowed(self, guard, workspace):
        assert guard.validate(str(workspace / "new.txt")) == workspace / "new.txt"

    def test_nested_missing_dirs_allowed(self, guard, workspace):
        target = workspace / "a" / "b" / "c"
        assert guard.validate(str(target)) == target

    def test_missing_path_outside_blocked(self, guard, outside):
        with pytest.raises(OutOfBounds):
            guard.validate(str(outside / "nope" / "deeper"))


class TestAllowedRootsConfiguration:
    """Tests for startup configuration of the allowed roots."""

    def test_no_roots_rejected(self):
        with pytest.raises(ConfigurationError):
            AllowedRoots.from_args([])

    def test_missing_root_rejected(self, tmp_path):
        with pytest.raises(ConfigurationError):
            AllowedRoots.from_args([str(tmp_path / "missing")])

    def test_file_root_rejected(self, tmp_path):
        f = tmp_path / "file.txt"
        f.write_text("x")
        with pytest.raises(ConfigurationError):
            AllowedRoots.from_args([str(f)])

    def test_roots_are_resolved_and_deduplicated(self, tmp_path):
        real = tmp_path / "real"
        real.mkdir()
        (tmp_path / "alias").symlink_to(real, target_is_directory=True)
        allowed = AllowedRoots.from_args([str(real), str(tmp_path / "alias")])
        assert allowed.roots == (real.resolve(),)

    def test_multiple_roots(self, tmp_path):
        one = tmp_path / "one"
        two = tmp_path / "two"
        one.mkdir()
        two.mkdir()
        guard = PathGuard(AllowedRoots.from_args([str(one), str(two)]))
        assert guard.validate(str(two / "f.txt")) == two.resolve() / "f.txt"


class TestSymlinkCycles:
    """Tests that traversals terminate on symlink loops."""

    @pytest.mark.asyncio
    async def test_directory_tree_reports_cycle(self, dispatcher, workspace):
        loop_dir = workspace / "loop"
        loop_dir.mkdir()
        (loop_dir / "back").symlink_to(workspace, target_is_directory=True)

        result = await dispatcher.dispatch("directory_tree", {"path": str(workspace)})
        assert error_payload(result)["error"] == "cycle_detected"

    @pytest.mark.asyncio
    async def test_search_reports_cycle(self, dispatcher, workspace):
        (workspace / "self").symlink_to(workspace, target_is_directory=True)

        result = await dispatcher.dispatch(
            "search_files", {"path": str(workspace), "pattern": "*.txt"}
        )
        assert error_payload(result)["error"] == "cycle_detected"

    @pytest.mark.asyncio
    async def test_self_referencing_symlink_in_tree(self, dispatcher, workspace):
        """A link that names itself cannot be resolved by the OS (ELOOP)."""
        (workspace / "loop").symlink_to(workspace / "loop")

        result = await dispatcher.dispatch("directory_tree", {"path": str(workspace)})
        assert error_payload(result)["error"] == "cycle_detected"

    @pytest.mark.asyncio
    async def test_mutual_symlinks_in_search(self, dispatcher, workspace):
        (workspace / "a").symlink_to(workspace / "b")
        (workspace / "b").symlink_to(workspace / "a")

        result = await dispatcher.dispatch(
            "search_files", {"path": str(workspace), "pattern": "*.txt"}
        )
        assert error_payload(result)["error"] == "cycle_detected"

    @pytest.mark.asyncio
    async def test_listing_shows_looping_symlink(self, dispatcher, workspace):
        (workspace / "loop").symlink_to(workspace / "loop")

        result = await dispatcher.dispatch("list_directory", {"path": str(workspace)})
        assert result.isError is False
        assert result.content[0].text == "[FILE] loop"

    @pytest.mark.asyncio
    async def test_listing_does_not_follow_directory_symlink(self, dispatcher, workspace):
        (workspace / "real").mkdir()
        (workspace / "alias").symlink_to(workspace / "real", target_is_directory=True)

        result = await dispatcher.dispatch("list_directory", {"path": str(workspace)})
        lines = result.content[0].text.split("\n")
        assert sorted(lines) == ["[DIR] real", "[FILE] alias"]

    @pytest.mark.asyncio
    async def test_directory_tree_rejects_escaping_subdirectory(self, dispatcher, workspace, outside):
        (workspace / "sub").mkdir()
        (workspace / "sub" / "escape").symlink_to(outside, target_is_directory=True)

        result = await dispatcher.dispatch("directory_tree", {"path": str(workspace)})
        assert error_payload(result)["error"] == "out_of_bounds"

    @pytest.mark.asyncio
    async def test_search_skips_escaping_entries(self, dispatcher, workspace, outside):
        (workspace / "escape").symlink_to(outside, target_is_directory=True)
        (workspace / "secret_notes.txt").write_text("mine")

        result = await dispatcher.dispatch(
            "search_files", {"path": str(workspace), "pattern": "secret"}
        )
        assert result.isError is False
        assert result.content[0].text == str(workspace / "secret_notes.txt")


class TestErrorMessageSanitization:
    """Tests that denials do not leak sandbox internals."""

    @pytest.mark.asyncio
    async def test_read_outside_returns_generic_denial(self, dispatcher):
        result = await dispatcher.dispatch("read_file", {"path": "/etc/passwd"})
        payload = error_payload(result)
        assert payload["error"] == "out_of_bounds"
        assert "Access denied" in payload["message"]
        assert "root:" not in result.content[0].text

    @pytest.mark.asyncio
    async def test_denial_does_not_reveal_symlink_target(self, dispatcher, workspace, outside):
        (workspace / "escape.txt").symlink_to(outside / "secret.txt")

        result = await dispatcher.dispatch("read_file", {"path": str(workspace / "escape.txt")})
        response_text = result.content[0].text
        assert error_payload(result)["error"] == "out_of_bounds"
        assert str(outside) not in response_text
        assert "top secret" not in response_text
        assert "Traceback" not in response_text

    @pytest.mark.asyncio
    async def test_write_outside_does_not_create_file(self, dispatcher, outside):
        target = outside / "planted.txt"
        result = await dispatcher.dispatch("write_file", {"path": str(target), "content": "x"})
        assert error_payload(result)["error"] == "out_of_bounds"
        assert not target.exists()

    @pytest.mark.asyncio
    async def test_move_out_of_sandbox_blocked(self, dispatcher, workspace, outside):
        (workspace / "keep.txt").write_text("keep")
        result = await dispatcher.dispatch(
            "move_file",
            {"source": str(workspace / "keep.txt"), "destination": str(outside / "stolen.txt")},
        )
        assert error_payload(result)["error"] == "out_of_bounds"
        assert (workspace / "keep.txt").exists()
        assert not os.path.exists(outside / "stolen.txt")
