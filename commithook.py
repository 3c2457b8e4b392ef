#!/usr/bin/env python3
"""commithook — Git pre-commit hook runner.

Installs itself as the git pre-commit hook of a project, reads the
``pre-commit`` configuration from package.json (or .pre-commit.json) and
runs the configured scripts one after another, refusing the commit at the
first script that fails.

Zero dependencies. Python 3.9+.

Usage:
    commithook install            Install the hook into .git/hooks/
    commithook uninstall          Remove the hook (restores pre-commit.old)
    commithook run                Run the configured checks (used by the hook)
    commithook run --no-color     Plain output
    commithook run --silent       No output, exit status only
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import re
import shutil
import subprocess
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Callable, Optional, Sequence, Union


__version__ = "0.1.0"

log = logging.getLogger("commithook")

MANIFEST = "package.json"
OVERRIDE_FILE = ".pre-commit.json"
HOOK_NAME = "pre-commit"
BACKUP_SUFFIX = ".old"

# What `npm init` writes when no test runner was configured.
NO_TEST_PLACEHOLDER = 'echo "Error: no test specified" && exit 1'

ExitCallback = Callable[[int, Optional[list]], Any]
Message = Union[str, Sequence[str]]


# ── Messages ──────────────────────────────────────────────────────────────────

ROOT_NOT_FOUND = "\n".join([
    "Failed to find the root of this git repository, cannot locate the `package.json`.",
    "Skipping the pre-commit hook.",
])

MANIFEST_ERROR = "\n".join([
    "Received an error while parsing or locating the `package.json` file:",
    "",
    "{error}",
    "",
    "Skipping the pre-commit hook.",
])

OVERRIDE_ERROR = "\n".join([
    "Received an error while reading or parsing the `.pre-commit.json` file:",
    "",
    "{error}",
    "",
    "Fix or remove the file, the commit has been aborted.",
])

CONFIG_ERROR = "\n".join([
    "Received an error while resolving the pre-commit configuration:",
    "",
    "{error}",
    "",
    "Fix the configuration, the commit has been aborted.",
])

MISSING_BINARY = "\n".join([
    "Failed to locate the `{binary}` binary, make sure it's installed in your $PATH.",
    "Skipping the pre-commit hook.",
])

NOTHING_TO_RUN = "\n".join([
    "We have no pre-commit hooks to run. Either you're missing the `scripts` in your",
    "`package.json` or have configured pre-commit to run nothing.",
    "Skipping the pre-commit hook.",
])

FAILURE = "\n".join([
    "We've failed to pass the specified git pre-commit hooks as the `{name}` hook ({position}/{total})",
    "returned an exit code ({status}). If you're feeling adventurous you can",
    "skip the git pre-commit hooks by adding the following flags to your commit:",
    "",
    "  git commit -n (or --no-verify)",
    "",
    "This is ill-advised since the commit is broken.",
])


# ── Errors ────────────────────────────────────────────────────────────────────

class ConfigError(Exception):
    """Configuration could not be loaded."""

    def __init__(self, message: str, path: Optional[Path] = None):
        super().__init__(message)
        self.path = path


class ConfigReadError(ConfigError):
    """A configuration file exists but cannot be read."""


class ConfigParseError(ConfigError):
    """A configuration file or value is not usable."""


# ── Config ────────────────────────────────────────────────────────────────────

BOOLEAN_FLAGS = ("silent", "colors", "ignorestatus")
FLAG_PREFIXES = ("precommit.", "pre-commit.")


def supports_color(stream) -> bool:
    return hasattr(stream, "isatty") and stream.isatty()


@dataclass
class Config:
    run: Optional[list[str]] = None
    silent: bool = False
    colors: bool = False
    ignorestatus: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    def apply(self, flags: dict[str, Any]) -> None:
        """Overwrite fields with the given flags; unknown flags go to ``extra``."""
        known = {f.name for f in fields(self)} - {"extra"}
        for name, value in flags.items():
            if name == "run":
                self.run = normalize_run(value)
            elif name in BOOLEAN_FLAGS:
                setattr(self, name, bool(value))
            elif name in known:
                setattr(self, name, value)
            else:
                self.extra[name] = value


def normalize_run(value: Any) -> Optional[list[str]]:
    """Turn a run value into a list of script names.

    Strings are split on commas and whitespace, lists are stripped. Empty
    entries are dropped, order and duplicates are kept.
    """
    if value is None:
        return None
    if isinstance(value, str):
        return [name for name in re.split(r"[,\s]+", value) if name]
    if isinstance(value, (list, tuple)):
        names = []
        for item in value:
            if not isinstance(item, str):
                raise ConfigParseError(f"run entries must be strings, got {item!r}")
            if item.strip():
                names.append(item.strip())
        return names
    raise ConfigParseError(f"run must be a string or a list, got {type(value).__name__}")


def scan_flags(manifest: dict, prefix: str) -> dict[str, Any]:
    """Collect ``<prefix><flag>`` keys of the manifest, prefix stripped."""
    flags = {}
    for key, value in manifest.items():
        if key.startswith(prefix) and len(key) > len(prefix):
            flags[key[len(prefix):]] = value
    return flags


def has_test_script(manifest: dict) -> bool:
    scripts = manifest.get("scripts")
    if not isinstance(scripts, dict):
        return False
    test = scripts.get("test")
    return bool(test) and test != NO_TEST_PLACEHOLDER


def resolve_config(
    manifest: dict,
    override: Optional[dict] = None,
    options: Optional[dict] = None,
    colors: Optional[bool] = None,
) -> Config:
    """Merge defaults, manifest, override file and options into a Config."""
    config = Config(colors=supports_color(sys.stdout) if colors is None else colors)

    flags: dict[str, Any] = {}
    for prefix in FLAG_PREFIXES:
        flags.update(scan_flags(manifest, prefix))

    run = flags.pop("run", None)
    pre = manifest.get("pre-commit")
    if pre is None or (isinstance(pre, str) and not pre.strip()):
        pre = manifest.get("precommit")
    if isinstance(pre, str) and not pre.strip():
        pre = None
    if isinstance(pre, dict):
        pre = dict(pre)
        run = pre.pop("run", run)
        flags.update(pre)
    elif pre is not None:
        run = pre

    config.apply(flags)
    config.run = normalize_run(run)
    if config.run is None and has_test_script(manifest):
        config.run = ["test"]

    if override:
        config.apply(override)
    if options:
        config.apply(options)

    log.debug("resolved config: %s", config)
    return config


def _load_json(path: Path) -> Any:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigReadError(f"{path}: {e}", path) from e
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigParseError(f"{path}: {e}", path) from e


def read_manifest(path: Path) -> dict:
    """Read package.json; a missing file is an empty manifest."""
    if not path.is_file():
        return {}
    data = _load_json(path)
    if not isinstance(data, dict):
        raise ConfigParseError(f"{path}: expected a JSON object", path)
    return data


def read_override(path: Path) -> Optional[dict]:
    """Read .pre-commit.json, ``None`` when there is no such file."""
    if not path.exists():
        return None
    data = _load_json(path)
    if not isinstance(data, dict):
        raise ConfigParseError(f"{path}: expected a JSON object", path)
    return data


# ── Output ────────────────────────────────────────────────────────────────────

PREFIX = "pre-commit:"
NEUTRAL = "\033[90m"  # Gray
FAILURE_COLOR = "\033[91m"  # Red
RESET = "\033[0m"


def format_lines(message: Message, code: int = 1, colors: bool = False) -> list[str]:
    """Split a message into tagged display lines framed by blank tagged lines."""
    if isinstance(message, str):
        body = message.split("\n")
    else:
        body = [part for item in message for part in str(item).split("\n")]

    lines = ["", *body, ""]
    last = len(lines) - 1
    out = []
    for i, line in enumerate(lines):
        if colors:
            color = NEUTRAL if code == 0 or i in (0, last) else FAILURE_COLOR
            out.append(f"{color}{PREFIX}{RESET} {line}")
        else:
            out.append(f"{PREFIX} {line}")
    return out


def emit(lines: list[str], code: int) -> None:
    stream = sys.stderr if code else sys.stdout
    for line in lines:
        print(line, file=stream)


# ── Checks ────────────────────────────────────────────────────────────────────

@dataclass
class ExecutionResult:
    name: str
    status: int
    output: str = ""


Runner = Callable[[str], ExecutionResult]


class ScriptRunner:
    """Run package scripts through ``<binary> run <script> --silent``."""

    def __init__(self, binary: str, root: Path, capture: bool = False):
        self.binary = binary
        self.root = Path(root)
        self.capture = capture

    @classmethod
    def locate(cls, root: Path, name: str = "npm", capture: bool = False) -> Optional[ScriptRunner]:
        binary = shutil.which(name)
        if binary is None:
            return None
        return cls(binary, root, capture=capture)

    def __call__(self, script: str) -> ExecutionResult:
        cmd = [self.binary, "run", script, "--silent"]
        log.debug("running %s in %s", cmd, self.root)
        if self.capture:
            proc = subprocess.run(cmd, cwd=self.root, capture_output=True, text=True, check=False)
            return ExecutionResult(script, proc.returncode, (proc.stdout or "") + (proc.stderr or ""))
        proc = subprocess.run(cmd, cwd=self.root, check=False)
        return ExecutionResult(script, proc.returncode)


def run_checks(scripts: Sequence[str], runner: Runner) -> list[ExecutionResult]:
    """Run scripts in order, stopping after the first failure."""
    results = []
    for name in scripts:
        result = runner(name)
        results.append(result)
        if result.status != 0:
            break
    return results


def has_staged_changes(root: Path) -> bool:
    try:
        proc = subprocess.run(
            ["git", "diff", "--cached", "--quiet"],
            cwd=root,
            capture_output=True,
            check=False,
        )
    except FileNotFoundError:
        log.debug("git not found, assuming staged changes")
        return True
    return proc.returncode != 0


def find_project_root(cwd: Optional[Path] = None) -> Optional[Path]:
    try:
        proc = subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],
            cwd=cwd,
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError:
        return None
    if proc.returncode != 0 or not proc.stdout.strip():
        return None
    return Path(proc.stdout.strip())


# ── Hook ──────────────────────────────────────────────────────────────────────

class Hook:
    """Resolve the pre-commit configuration and run the configured checks.

    Every outcome ends in a single call of ``exit(code, lines)``: ``lines`` is
    ``None`` when all checks passed or were skipped silently, otherwise the
    tagged lines that were (or, when silent, would have been) printed.
    """

    def __init__(
        self,
        exit: ExitCallback,
        options: Optional[dict] = None,
        *,
        root: Optional[Path] = None,
        runner: Optional[Runner] = None,
        staged: Optional[Callable[[Path], bool]] = None,
    ):
        self.exit = exit
        self.options = dict(options or {})
        self.runner = runner
        self.staged = staged or has_staged_changes
        self.manifest: dict = {}
        self.override: Optional[dict] = None
        self.error: Optional[str] = None
        self.config = resolve_config({}, options=self.options)
        self.root = Path(root) if root is not None else find_project_root()
        self.initialize()

    @property
    def silent(self) -> bool:
        return self.config.silent

    @property
    def colors(self) -> bool:
        return self.config.colors

    def initialize(self) -> None:
        if self.root is None:
            self.log(ROOT_NOT_FOUND, 0)
            return

        try:
            self.manifest = read_manifest(self.root / MANIFEST)
        except ConfigError as e:
            self.log(MANIFEST_ERROR.format(error=e), 0)
            return

        try:
            self.override = read_override(self.root / OVERRIDE_FILE)
        except ConfigError as e:
            self.fail(OVERRIDE_ERROR.format(error=e))
            return

        self.parse()

    def parse(self) -> Config:
        """Re-derive ``config`` from the stored manifest and override data."""
        try:
            self.config = resolve_config(self.manifest, self.override, self.options)
        except ConfigError as e:
            self.fail(CONFIG_ERROR.format(error=e))
        else:
            self.error = None
        return self.config

    def fail(self, message: str) -> None:
        """Report a fatal configuration error; ``run()`` repeats it."""
        self.error = message
        self.log(message, 1)

    def log(self, message: Optional[Message] = None, code: int = 1) -> bool:
        if message is None:
            self.exit(code, None)
            return code == 0

        lines = format_lines(message, code, self.colors)
        if not self.silent:
            emit(lines, code)
        self.exit(code, lines)
        return code == 0

    def run(self) -> None:
        if self.error is not None:
            self.log(self.error, 1)
            return

        if self.root is not None and not self.staged(self.root):
            log.debug("no staged changes, skipping checks")
            self.log(None, 0)
            return

        scripts = list(self.config.run or [])
        if not scripts:
            self.log(NOTHING_TO_RUN, 0)
            return

        runner = self.runner
        if runner is None:
            name = self.config.extra.get("runner", "npm")
            runner = ScriptRunner.locate(self.root or Path.cwd(), name)
            if runner is None:
                self.log(MISSING_BINARY.format(binary=name), 0)
                return

        results = run_checks(scripts, runner)
        failed = results[-1]
        if failed.status == 0:
            self.log(None, 0)
            return

        lines = FAILURE.format(
            name=failed.name,
            position=len(results),
            total=len(scripts),
            status=failed.status,
        ).split("\n")
        if failed.output:
            lines += ["", *failed.output.rstrip("\n").split("\n")]
        self.log(lines, 1)


def create_hook(exit: ExitCallback, options: Optional[dict] = None, **collaborators: Any) -> Hook:
    return Hook(exit, options, **collaborators)


# ── Install ───────────────────────────────────────────────────────────────────

HOOK_MARKER = "# commithook"

HOOK_TEMPLATE = """#!/usr/bin/env bash
{marker}: remove with `commithook uninstall`
if git diff --cached --quiet; then
  echo "No staged changes detected, skipping pre-commit hook."
  exit 0
fi
"{python}" -m commithook run
RESULT=$?
[ $RESULT -ne 0 ] && exit 1
exit 0
"""


def find_folder_in_path(folder: str, path: Path) -> Optional[Path]:
    """Look for ``folder`` in ``path`` and then in each of its ancestors.

    Returns ``None`` when the filesystem root is reached, or when the first
    match is not a directory.
    """
    current = Path(path).resolve()
    while True:
        candidate = current / folder
        if candidate.exists():
            if candidate.is_dir():
                log.debug("found %s folder in %s", folder, candidate)
                return candidate
            return None
        log.debug("not found %s folder in %s", folder, candidate)
        if current.parent == current:
            return None
        current = current.parent


def resolve_git_dir(root: Path) -> Optional[Path]:
    """Locate the git directory, following ``gitdir:`` pointer files."""
    dotgit = Path(root) / ".git"
    if dotgit.is_file():
        match = re.search(r"gitdir:\s*(.+)", dotgit.read_text(encoding="utf-8", errors="replace"))
        if not match:
            return None
        return (dotgit.parent / match.group(1).strip()).resolve()
    return find_folder_in_path(".git", root)


def _announce(message: Message, code: int, colors: bool) -> None:
    emit(format_lines(message, code, colors), code)


def install(root: Optional[Path] = None, colors: Optional[bool] = None) -> int:
    """Install the pre-commit hook. Problems are reported, never raised."""
    root = Path(root) if root is not None else Path.cwd()
    if colors is None:
        colors = supports_color(sys.stdout)

    git = resolve_git_dir(root)
    if git is None:
        _announce("Not found any .git folder for installing pre-commit hook", 1, colors)
        return 0

    hooks = git / "hooks"
    precommit = hooks / HOOK_NAME
    try:
        hooks.mkdir(parents=True, exist_ok=True)

        if precommit.exists() and not precommit.is_symlink():
            existing = precommit.read_text(encoding="utf-8", errors="replace")
            if HOOK_MARKER not in existing:
                backup = precommit.with_name(HOOK_NAME + BACKUP_SUFFIX)
                shutil.copyfile(precommit, backup)
                _announce([
                    "Detected an existing git pre-commit hook",
                    f"Old pre-commit hook backuped to {backup.name}",
                ], 0, colors)

        if precommit.is_symlink() or precommit.exists():
            precommit.unlink()
        precommit.write_text(
            HOOK_TEMPLATE.format(marker=HOOK_MARKER, python=sys.executable),
            encoding="utf-8",
        )
    except OSError as e:
        _announce([
            f"Failed to create the hook file in your {hooks} folder because:",
            str(e),
            "The hook was not installed.",
        ], 1, colors)
        return 0

    try:
        os.chmod(precommit, 0o755)
    except OSError as e:
        _announce([
            "chmod 0755 the pre-commit file in your .git/hooks folder because:",
            str(e),
        ], 1, colors)

    log.debug("installed hook at %s", precommit)
    return 0


def uninstall(root: Optional[Path] = None, colors: Optional[bool] = None) -> int:
    """Remove the pre-commit hook, restoring a backed-up hook if there is one."""
    root = Path(root) if root is not None else Path.cwd()
    if colors is None:
        colors = supports_color(sys.stdout)

    git = resolve_git_dir(root)
    if git is None:
        return 0
    precommit = git / "hooks" / HOOK_NAME
    if not precommit.exists() and not precommit.is_symlink():
        return 0

    backup = precommit.with_name(HOOK_NAME + BACKUP_SUFFIX)
    try:
        if backup.exists():
            precommit.unlink()
            shutil.copyfile(backup, precommit)
            os.chmod(precommit, 0o755)
            backup.unlink()
            _announce(f"Restored the original pre-commit hook from {backup.name}", 0, colors)
        else:
            precommit.unlink()
    except OSError as e:
        _announce(["Failed to remove the pre-commit hook because:", str(e)], 1, colors)
    return 0


# ── Main ──────────────────────────────────────────────────────────────────────

def exit_callback(ignorestatus: bool = False) -> ExitCallback:
    """Build the exit callback used by the CLI.

    With ``ignorestatus`` the status is only recorded, the process keeps
    running.
    """
    def finish(code: int, lines: Optional[list] = None) -> None:
        if ignorestatus:
            log.debug("ignoring exit status %d", code)
            return
        sys.exit(code)

    return finish


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="commithook",
        description="Git pre-commit hook runner — run package scripts before every commit",
    )
    parser.add_argument("command", choices=["run", "install", "uninstall"], nargs="?", default="run",
                        help="What to do (default: run)")
    parser.add_argument("--root", help="Project directory (default: git top level / current dir)")
    parser.add_argument("--no-color", action="store_true", help="Disable color output")
    parser.add_argument("--silent", action="store_true", help="Suppress all output")
    parser.add_argument("--ignorestatus", action="store_true",
                        help="Do not exit the process with the hook status")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--version", action="version", version=f"commithook {__version__}")

    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s: %(message)s")

    root = Path(args.root).resolve() if args.root else None
    colors = False if args.no_color else None

    if args.command == "install":
        return install(root, colors=colors)
    if args.command == "uninstall":
        return uninstall(root, colors=colors)

    options: dict[str, Any] = {}
    if args.no_color:
        options["colors"] = False
    if args.silent:
        options["silent"] = True
    if args.ignorestatus:
        options["ignorestatus"] = True

    hook = create_hook(exit_callback(args.ignorestatus), options, root=root)
    hook.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
