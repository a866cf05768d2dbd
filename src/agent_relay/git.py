"""Git helpers: working-tree diffs and repository identity."""

import asyncio
import os
import re
from pathlib import Path
from typing import Iterable, Optional, Tuple


SCP_REMOTE_PATTERN = re.compile(r"^(?:[\w.-]+@)?([\w.-]+):(?!//)(.+)$")


def _is_valid_project_path(project_path: str) -> bool:
    return bool(project_path) and os.path.isabs(project_path) and os.path.isdir(project_path)


async def _git(project_path: str, *args: str) -> Tuple[int, str]:
    """Run a git command in project_path and return (exit code, stdout)."""
    try:
        proc = await asyncio.create_subprocess_exec(
            "git",
            "-C",
            project_path,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError:
        return 127, ""
    stdout, _ = await proc.communicate()
    return proc.returncode, stdout.decode("utf-8", errors="replace")


async def is_git_repo(project_path: str) -> bool:
    if not _is_valid_project_path(project_path):
        return False
    code, _ = await _git(project_path, "rev-parse", "--git-dir")
    return code == 0


def _untracked_file_diff(relative_path: str, content: str) -> str:
    lines = content.split("\n")
    if lines and lines[-1] == "":
        lines = lines[:-1]
    if not lines:
        return ""

    parts = [
        f"diff --git a/{relative_path} b/{relative_path}\n",
        "new file mode 100644\n",
        "--- /dev/null\n",
        f"+++ b/{relative_path}\n",
        f"@@ -0,0 +1,{len(lines)} @@\n",
    ]
    parts.extend(f"+{line}\n" for line in lines)
    return "".join(parts)


async def capture_git_diff(
    project_path: str, allowed_untracked_files: Optional[Iterable[str]] = None
) -> Optional[str]:
    """Capture the working-tree diff of a project against HEAD.

    Tracked changes (staged and unstaged) are always included. Untracked
    files are included only when listed in ``allowed_untracked_files``
    (absolute or project-relative paths); pass None to include all of them.
    Returns None when the path is not a repository or nothing changed.
    """
    if not await is_git_repo(project_path):
        return None

    code, tracked_diff = await _git(project_path, "diff", "HEAD")
    if code != 0:
        # No HEAD yet (fresh repository); fall back to the index
        code, tracked_diff = await _git(project_path, "diff", "--cached")
        if code != 0:
            tracked_diff = ""

    code, untracked_output = await _git(
        project_path, "ls-files", "--others", "--exclude-standard"
    )
    untracked = [name for name in untracked_output.splitlines() if name.strip()] if code == 0 else []

    allowed = None
    if allowed_untracked_files is not None:
        root = Path(project_path).resolve()
        allowed = set()
        for file_path in allowed_untracked_files:
            candidate = Path(file_path)
            if not candidate.is_absolute():
                candidate = root / candidate
            allowed.add(str(candidate.resolve()))

    untracked_parts = []
    for relative_path in untracked:
        full_path = Path(project_path) / relative_path
        if allowed is not None and str(full_path.resolve()) not in allowed:
            continue
        try:
            content = full_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            # Binary or unreadable
            continue
        untracked_parts.append(_untracked_file_diff(relative_path, content))

    combined = tracked_diff + "".join(untracked_parts)
    return combined or None


def normalize_remote_url(remote_url: str) -> Optional[str]:
    """Reduce a git remote URL to 'host/owner/repo'."""
    url = remote_url.strip()
    if not url:
        return None

    scp = SCP_REMOTE_PATTERN.match(url)
    if scp and "://" not in url:
        host, path = scp.group(1), scp.group(2)
    else:
        match = re.match(r"^[a-z+]+://(?:[^@/]+@)?([^/:]+)(?::\d+)?/(.+)$", url)
        if not match:
            return None
        host, path = match.group(1), match.group(2)

    path = path.strip("/")
    if path.endswith(".git"):
        path = path[: -len(".git")]
    if not path:
        return None
    return f"{host.lower()}/{path}"


async def get_repo_identifier(project_path: str) -> Optional[str]:
    """Stable identifier used by the repository allow-list.

    The normalized origin remote when there is one, ``local:<toplevel>`` for
    repositories without an origin, None outside a repository.
    """
    if not await is_git_repo(project_path):
        return None

    code, remote = await _git(project_path, "remote", "get-url", "origin")
    if code == 0:
        identifier = normalize_remote_url(remote)
        if identifier:
            return identifier

    code, toplevel = await _git(project_path, "rev-parse", "--show-toplevel")
    if code == 0 and toplevel.strip():
        return f"local:{toplevel.strip()}"
    return None


async def get_repo_https_url(project_path: str) -> Optional[str]:
    if not await is_git_repo(project_path):
        return None
    code, remote = await _git(project_path, "remote", "get-url", "origin")
    if code != 0:
        return None
    identifier = normalize_remote_url(remote)
    return f"https://{identifier}" if identifier else None


async def get_current_branch(project_path: str) -> Optional[str]:
    if not await is_git_repo(project_path):
        return None
    code, branch = await _git(project_path, "rev-parse", "--abbrev-ref", "HEAD")
    branch = branch.strip()
    if code != 0 or not branch or branch == "HEAD":
        return None
    return branch
