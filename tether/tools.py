"""Built-in file and shell tools, sandboxed to a base directory."""

import fnmatch
import os
import re
import subprocess
import sys
from functools import partial
from pathlib import Path, PurePosixPath, PureWindowsPath

from .executor import ToolError, ToolRegistry

TOOLS = [
    {
        "type": "function",
        "function": {
            "name": "read",
            "description": (
                "Read the contents of a file or list a directory. "
                "For files, returns lines prefixed with line numbers. "
                "Use offset/limit to paginate."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "file_path": {
                        "type": "string",
                        "description": "Path to the file or directory to read.",
                    },
                    "offset": {
                        "type": "integer",
                        "description": "1-based line number to start reading from. Defaults to 1.",
                        "default": 1,
                    },
                    "limit": {
                        "type": "integer",
                        "description": "Maximum number of lines to return. Defaults to 2000.",
                        "default": 2000,
                    },
                },
                "required": ["file_path"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "write",
            "description": (
                "Create or overwrite a file with the given content, "
                "creating parent directories as needed."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "file_path": {"type": "string", "description": "Path to the file to write."},
                    "content": {"type": "string", "description": "The content to write."},
                },
                "required": ["file_path", "content"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "edit",
            "description": (
                "Replace old_string with new_string in an existing file. "
                "old_string must match exactly and be unique unless replace_all is set."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "file_path": {"type": "string", "description": "Path to the file to edit."},
                    "old_string": {"type": "string", "description": "The exact text to replace."},
                    "new_string": {"type": "string", "description": "The replacement text."},
                    "replace_all": {
                        "type": "boolean",
                        "description": "Replace all occurrences.",
                        "default": False,
                    },
                },
                "required": ["file_path", "old_string", "new_string"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "glob",
            "description": "Recursively list files matching a glob pattern, newest first.",
            "parameters": {
                "type": "object",
                "properties": {
                    "pattern": {
                        "type": "string",
                        "description": 'Glob pattern relative to path, e.g. "**/*.py".',
                    },
                    "path": {
                        "type": "string",
                        "description": "Directory to search from. Defaults to the base directory.",
                        "default": ".",
                    },
                },
                "required": ["pattern"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "grep",
            "description": "Search file contents for a regular expression.",
            "parameters": {
                "type": "object",
                "properties": {
                    "pattern": {"type": "string", "description": "Python regular expression."},
                    "path": {
                        "type": "string",
                        "description": "Directory to search. Defaults to the base directory.",
                        "default": ".",
                    },
                    "include": {
                        "type": "string",
                        "description": 'Only search files whose name matches this glob, e.g. "*.py".',
                    },
                },
                "required": ["pattern"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "bash",
            "description": (
                "Run a shell command in the base directory and return its combined "
                "stdout and stderr."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "command": {"type": "string", "description": "Shell command string."},
                    "timeout": {
                        "type": "integer",
                        "description": "Timeout in seconds (1-120). Defaults to 30.",
                        "default": 30,
                    },
                },
                "required": ["command"],
            },
        },
    },
]

MAX_LINE_LENGTH = 2000
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB
MAX_LIST_RESULTS = 100
MAX_GREP_MATCHES = 100
MAX_TIMEOUT = 120


def safe_resolve(file_path: str, base_dir: str, unrestricted: bool = False) -> Path:
    """Resolve a file path, ensuring it stays within base_dir.

    Symlinks are resolved on both sides before the containment check. When
    unrestricted is True only the filesystem root is refused.

    Raises:
        ToolError: If the resolved path escapes base_dir.
    """
    base = Path(base_dir).resolve()
    if Path(file_path).is_absolute():
        resolved = Path(file_path).resolve()
    else:
        resolved = (base / file_path).resolve()

    if unrestricted:
        if resolved == Path(resolved.anchor):
            raise ToolError(f"path {file_path!r} resolves to the filesystem root")
        return resolved

    if resolved.is_relative_to(base):
        return resolved
    raise ToolError(
        f"path {file_path!r} resolves to {resolved}, "
        f"which is outside base directory {base}"
    )


def _check_pattern(pattern: str) -> None:
    """Reject patterns that are absolute or contain '..'."""
    if PurePosixPath(pattern).is_absolute() or PureWindowsPath(pattern).is_absolute():
        raise ToolError(f"pattern {pattern!r} must be relative, not absolute")
    if ".." in PurePosixPath(pattern).parts or ".." in PureWindowsPath(pattern).parts:
        raise ToolError(f"pattern {pattern!r} contains '..', which is not allowed")


def _glob_match(rel: str, pattern: str) -> bool:
    # fnmatch's "*" also crosses "/", so "**/" only needs to allow zero dirs.
    if fnmatch.fnmatchcase(rel, pattern):
        return True
    return pattern.startswith("**/") and fnmatch.fnmatchcase(rel, pattern[3:])


def _search_root(path: str, base_dir: str, unrestricted: bool) -> Path:
    root = safe_resolve(path, base_dir, unrestricted)
    if not root.exists():
        raise ToolError(f"path does not exist: {path}")
    if not root.is_dir():
        raise ToolError(f"path is not a directory: {path}")
    return root


def _walk(root: Path):
    for dirpath, dirs, files in os.walk(root):
        dirs[:] = [d for d in dirs if d not in (".git", ".tether")]
        for filename in files:
            yield Path(dirpath) / filename


def _relative(path: Path, base: Path) -> str:
    try:
        return str(path.relative_to(base))
    except ValueError:
        return str(path)


def _is_binary(path: Path) -> bool:
    with open(path, "rb") as f:
        return b"\x00" in f.read(BINARY_CHECK_BYTES)


def _read(args: dict, *, base_dir: str, unrestricted: bool = False) -> str:
    file_path = args.get("file_path")
    if not isinstance(file_path, str) or not file_path:
        raise ToolError("'file_path' is required")
    resolved = safe_resolve(file_path, base_dir, unrestricted)
    if not resolved.exists():
        raise ToolError(f"path does not exist: {file_path}")

    if resolved.is_dir():
        return "\n".join(
            child.name + ("/" if child.is_dir() else "")
            for child in sorted(resolved.iterdir())
        )

    if _is_binary(resolved):
        raise ToolError(f"binary file detected: {file_path}")
    try:
        lines = resolved.read_text(encoding="utf-8").splitlines()
    except UnicodeDecodeError as e:
        raise ToolError(f"failed to decode {file_path} as UTF-8: {e}") from e

    offset = int(args.get("offset") or 1)
    limit = int(args.get("limit") or 2000)
    start = max(offset - 1, 0)
    selected = lines[start : start + limit]
    out = [
        f"{i}: {line[:MAX_LINE_LENGTH]}" for i, line in enumerate(selected, start=start + 1)
    ]
    remaining = len(lines) - (start + len(selected))
    if remaining > 0:
        out.append(
            f"[{remaining} more lines, use offset={start + len(selected) + 1} to continue]"
        )
    return "\n".join(out)


def _write(args: dict, *, base_dir: str, unrestricted: bool = False) -> str:
    file_path = args.get("file_path")
    content = args.get("content")
    if not isinstance(file_path, str) or not file_path:
        raise ToolError("'file_path' is required")
    if not isinstance(content, str):
        raise ToolError("'content' must be a string")
    resolved = safe_resolve(file_path, base_dir, unrestricted)
    resolved.parent.mkdir(parents=True, exist_ok=True)
    data = content.encode("utf-8")
    resolved.write_bytes(data)
    return f"Wrote {len(data)} bytes to {file_path}"


def _edit(args: dict, *, base_dir: str, unrestricted: bool = False) -> str:
    file_path = args.get("file_path")
    old_string = args.get("old_string")
    new_string = args.get("new_string")
    if not isinstance(file_path, str) or not file_path:
        raise ToolError("'file_path' is required")
    if not isinstance(old_string, str) or not old_string:
        raise ToolError("old_string must not be empty")
    if not isinstance(new_string, str):
        raise ToolError("'new_string' must be a string")
    resolved = safe_resolve(file_path, base_dir, unrestricted)
    if not resolved.is_file():
        raise ToolError(f"file does not exist: {file_path}")

    content = resolved.read_text(encoding="utf-8")
    count = content.count(old_string)
    if count == 0:
        raise ToolError(f"old_string not found in {file_path}")
    if count > 1 and not args.get("replace_all"):
        raise ToolError(
            f"old_string matches {count} times in {file_path}; "
            "add context to make it unique or set replace_all"
        )
    resolved.write_text(content.replace(old_string, new_string), encoding="utf-8")
    return f"Edited {file_path}"


def _glob(args: dict, *, base_dir: str, unrestricted: bool = False) -> str:
    pattern = args.get("pattern")
    if not isinstance(pattern, str) or not pattern:
        raise ToolError("'pattern' is required")
    _check_pattern(pattern)
    root = _search_root(args.get("path") or ".", base_dir, unrestricted)
    base = Path(base_dir).resolve()

    matched = [f for f in _walk(root) if _glob_match(f.relative_to(root).as_posix(), pattern)]
    if not matched:
        return "No files matched the pattern."
    matched.sort(key=lambda f: f.stat().st_mtime, reverse=True)

    result = "\n".join(_relative(f, base) for f in matched[:MAX_LIST_RESULTS])
    if len(matched) > MAX_LIST_RESULTS:
        result += (
            f"\n(Results truncated: showing first {MAX_LIST_RESULTS} results. "
            "Use a more specific pattern or path.)"
        )
    return result


def _grep(args: dict, *, base_dir: str, unrestricted: bool = False) -> str:
    pattern = args.get("pattern")
    if not isinstance(pattern, str) or not pattern:
        raise ToolError("'pattern' is required")
    include = args.get("include")
    if include is not None:
        _check_pattern(include)
    try:
        regex = re.compile(pattern)
    except re.error as e:
        raise ToolError(f"invalid regex {pattern!r}: {e}") from e
    root = _search_root(args.get("path") or ".", base_dir, unrestricted)
    base = Path(base_dir).resolve()

    matches: list[tuple[Path, int, str]] = []
    for filepath in _walk(root):
        if include and not fnmatch.fnmatch(filepath.name, include):
            continue
        try:
            if _is_binary(filepath):
                continue
            text = filepath.read_text(encoding="utf-8")
        except (UnicodeDecodeError, OSError):
            continue
        for line_no, line in enumerate(text.splitlines(), start=1):
            if regex.search(line):
                matches.append((filepath, line_no, line[:MAX_LINE_LENGTH]))

    if not matches:
        return "No matches found."
    matches.sort(key=lambda m: (str(m[0]), m[1]))

    out = [f"Found {len(matches)} matches"]
    current = None
    for filepath, line_no, line in matches[:MAX_GREP_MATCHES]:
        if filepath != current:
            out.append(f"\n{_relative(filepath, base)}:")
            current = filepath
        out.append(f"  Line {line_no}: {line}")
    if len(matches) > MAX_GREP_MATCHES:
        out.append(
            f"(Results truncated: showing first {MAX_GREP_MATCHES} matches. "
            "Use a more specific pattern or path.)"
        )
    return "\n".join(out)


def _bash(args: dict, *, base_dir: str) -> str:
    command = args.get("command")
    if not isinstance(command, str) or not command.strip():
        raise ToolError("'command' is required")
    try:
        timeout = int(args.get("timeout") or 30)
    except (TypeError, ValueError):
        raise ToolError("'timeout' must be an integer") from None
    timeout = max(1, min(timeout, MAX_TIMEOUT))

    if sys.platform == "win32":
        shell_cmd = ["cmd.exe", "/c", command]
    else:
        shell_cmd = ["/bin/sh", "-c", command]
    try:
        proc = subprocess.run(
            shell_cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            cwd=base_dir,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        raise ToolError(f"command timed out after {timeout}s") from None
    except OSError as e:
        raise ToolError(f"failed to start shell command: {e}") from e

    output = proc.stdout.decode("utf-8", errors="replace")
    parts = []
    if proc.returncode != 0:
        parts.append(f"Exit code: {proc.returncode}")
    if output:
        parts.append(output)
    return "\n".join(parts) if parts else "(no output)"


def build_registry(base_dir: str = ".", *, yolo: bool = False) -> ToolRegistry:
    """Registry of the built-in tools bound to base_dir.

    With yolo, file paths may leave base_dir.
    """
    registry = ToolRegistry()
    for name, func in [
        ("read", _read),
        ("write", _write),
        ("edit", _edit),
        ("glob", _glob),
        ("grep", _grep),
    ]:
        registry.register(name, partial(func, base_dir=base_dir, unrestricted=yolo))
    registry.register("bash", partial(_bash, base_dir=base_dir))
    return registry
