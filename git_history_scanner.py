#!/usr/bin/env python3
"""
===================================================================
GIT HISTORY CREDENTIAL SCANNER
===================================================================

PURPOSE:
    Retroactively scans the entire history of a Git repository - every
    branch, every commit reachable from it, every file present at that
    commit - for leaked AWS access key / secret key pairs. Credentials
    that were committed and later deleted are still reported, because
    each historical blob is materialized and scanned on its own.

FEATURES:
    ✓ Branch-qualified history walks (never depends on the checkout)
    ✓ Commit-scoped content resolution (git ls-tree / git cat-file)
    ✓ Interchangeable backends: git subprocesses or GitPython
    ✓ Bounded async worker pool for commit-level work
    ✓ Failures contained per file, per commit and per branch
    ✓ Every skip recorded with its unit and error
    ✓ Caller-level deadline with valid partial results
    ✓ Clone from URL, GitHub owner/repo shorthand or local directory
    ✓ JSON and CSV reports, optional secret redaction
    ✓ Structured JSON logging for observability

DETECTION:
    An access key identifier followed by whitespace and a 40 character
    secret token:
        AKIA<16 upper-case alphanumerics> <40 non-space characters>
        AWS<38 upper-case alphanumerics>  <40 non-space characters>
    The AKIA / AWS prefix is matched case-insensitively.

SECURITY NOTICE:
    This scanner NEVER attempts to use discovered credentials.
    Report findings to security teams immediately - do not test them.

REQUIREMENTS:
    pip install -e .
    or
    pip install aiofiles PyGithub GitPython tqdm

USAGE:
    # Scan a remote repository
    python git_history_scanner.py https://github.com/acme/widgets.git

    # Scan a GitHub repository by name (token needed for private repos)
    export GITHUB_TOKEN="ghp_your_token_here"
    python git_history_scanner.py acme/widgets

    # Scan an existing local clone in place
    python git_history_scanner.py ~/src/widgets --backend gitpython

CONFIGURATION:
    Set via environment variables:
    - GITHUB_TOKEN: GitHub token for private clones / name lookups
    - GIT_BACKEND: cli|gitpython (default: cli)
    - MAX_CONCURRENT_COMMITS: Parallel commit scans (default: 8)
    - MAX_CONCURRENT_BRANCHES: Parallel history walks (default: 4)
    - GIT_COMMAND_TIMEOUT_SECONDS: Per git query timeout (default: 120)
    - SCAN_TIMEOUT_SECONDS: Deadline for the whole scan, 0 = none
    - OUTPUT_FILE: Report output path (default: history_scan_report.json)
    - OUTPUT_FORMAT: json|csv|all (default: json)
    - REDACT_SECRETS: true|false (default: false)
    - LOG_FORMAT: text|json (default: text)

===================================================================
"""
import argparse
import asyncio
import csv
import hashlib
import io
import json
import logging
import os
import re
import shutil
import sys
import tempfile
import threading
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Dict, Any, Optional, Tuple, Set, Union

import aiofiles
import git
from git.exc import BadName, BadObject, GitCommandError, InvalidGitRepositoryError, NoSuchPathError
from github import Github, Auth, GithubException, RateLimitExceededException
from tqdm import tqdm

__version__ = "1.0.0"

# ===================================================================
# CONFIGURATION & CONSTANTS
# ===================================================================

# Environment-driven configuration
GITHUB_TOKEN = os.environ.get("GITHUB_TOKEN")
GIT_BACKEND = os.environ.get("GIT_BACKEND", "cli")  # cli|gitpython
MAX_CONCURRENT_COMMITS = int(os.environ.get("MAX_CONCURRENT_COMMITS", "8"))
MAX_CONCURRENT_BRANCHES = int(os.environ.get("MAX_CONCURRENT_BRANCHES", "4"))
GIT_COMMAND_TIMEOUT_SECONDS = float(os.environ.get("GIT_COMMAND_TIMEOUT_SECONDS", "120"))
SCAN_TIMEOUT_SECONDS = float(os.environ.get("SCAN_TIMEOUT_SECONDS", "0"))
OUTPUT_FILE = Path(os.environ.get("OUTPUT_FILE", "history_scan_report.json"))
OUTPUT_FORMAT = os.environ.get("OUTPUT_FORMAT", "json")  # json|csv|all
REDACT_SECRETS = os.environ.get("REDACT_SECRETS", "false").lower() == "true"
LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")  # text|json

# GitHub API backoff
GITHUB_API_BACKOFF_BASE = float(os.environ.get("GITHUB_API_BACKOFF_BASE", "2.0"))
GITHUB_API_MAX_RETRIES = int(os.environ.get("GITHUB_API_MAX_RETRIES", "5"))

# Operational constants
CLONE_TIMEOUT_SECONDS = 600
RETRY_ATTEMPTS = 3
RETRY_DELAY_SECONDS = 2

REMOTE_REF_PREFIX = "refs/remotes/"
LOCAL_REF_PREFIX = "refs/heads/"

SUPPORTED_BACKENDS = ("cli", "gitpython")
SUPPORTED_OUTPUT_FORMATS = ("json", "csv", "all")

# owner/repo
GITHUB_SHORTHAND = re.compile(r'[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+')

# Number of leading characters kept when secrets are redacted
REDACT_KEEP_CHARS = 4


# ===================================================================
# LOGGING SETUP
# ===================================================================

class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    EXTRA_FIELDS = ("branch", "commit", "path", "finding_count")

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for name in self.EXTRA_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        return json.dumps(log_data)


def setup_logging(log_format: str = "text") -> logging.Logger:
    """Setup logging with either text or JSON format."""
    logger = logging.getLogger(__name__)
    logger.setLevel(logging.INFO)

    # Remove existing handlers
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)

    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))

    logger.addHandler(handler)
    return logger


logger = setup_logging(LOG_FORMAT)


# ===================================================================
# ERRORS
# ===================================================================

class ScanError(Exception):
    """Base class for all scanner errors."""


class RepositoryAccessError(ScanError):
    """The repository handle, a branch name or a commit could not be resolved."""


class BlobNotFoundError(ScanError):
    """A listed file could not be read at the stated commit."""


class MatchError(ScanError):
    """The credential matcher could not process its input."""


class CloneError(ScanError):
    """The repository could not be acquired."""


# ===================================================================
# DATA MODEL
# ===================================================================

def calculate_secret_hash(value: str) -> str:
    """
    Calculate a stable hash for a secret value for deduplication.

    Args:
        value: Secret value to hash

    Returns:
        SHA256 hash of the value
    """
    return hashlib.sha256(value.encode('utf-8')).hexdigest()


def mask_secret(value: str, keep: int = REDACT_KEEP_CHARS) -> str:
    """Mask everything but the first `keep` characters of a secret."""
    if len(value) <= keep:
        return "*" * len(value)
    return value[:keep] + "*" * (len(value) - keep)


@dataclass(frozen=True)
class Finding:
    """A candidate credential pair and where it was found."""
    branch: str
    commit: str
    file: str
    access_key: str
    secret_token: str

    @property
    def fingerprint(self) -> str:
        """Identifies the credential itself, independent of where it was seen."""
        return calculate_secret_hash(f"{self.access_key}:{self.secret_token}")

    def to_dict(self, redact: bool = False) -> Dict[str, Any]:
        return {
            "branch": self.branch,
            "commit": self.commit,
            "file": self.file,
            "access_key": self.access_key,
            "secret_token": mask_secret(self.secret_token) if redact else self.secret_token,
            "fingerprint": self.fingerprint,
        }


@dataclass(frozen=True)
class ScanSkip:
    """A unit of work that was skipped because of an error."""
    unit: str  # branch|commit|file
    branch: str
    commit: Optional[str]
    file: Optional[str]
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "unit": self.unit,
            "branch": self.branch,
            "commit": self.commit,
            "file": self.file,
            "error": self.error,
        }


@dataclass
class ScanResult:
    """Everything a scan produced, complete or not."""
    findings: List[Finding] = field(default_factory=list)
    skips: List[ScanSkip] = field(default_factory=list)
    branches_scanned: int = 0
    commits_scanned: int = 0
    files_scanned: int = 0
    completed: bool = False

    def unique_credentials(self) -> Set[str]:
        return {finding.fingerprint for finding in self.findings}

    def findings_by_branch(self) -> Dict[str, int]:
        return dict(Counter(finding.branch for finding in self.findings))


# ===================================================================
# CREDENTIAL PATTERN MATCHING
# ===================================================================

class CredentialPatterns:
    """Compiled regex patterns for AWS credential pair detection."""

    # Access key id, whitespace, 40 character secret. Only the prefix
    # is case-insensitive.
    AWS_CREDENTIAL_PAIR = re.compile(
        r'(?i:AKIA)[0-9A-Z]{16}\s+\S{40}'
        r'|(?i:AWS)[0-9A-Z]{38}\s+\S{40}'
    )

    WHITESPACE_RUN = re.compile(r'\s+')


def match_credentials(content: Union[str, bytes]) -> List[Tuple[str, str]]:
    """
    Find every access key / secret token pair in a piece of file content.

    Binary content is decoded leniently, so it can only fail to match.
    Each non-overlapping occurrence yields its own pair.

    Args:
        content: File content as text or raw bytes

    Returns:
        List of (access_key, secret_token) tuples in match order

    Raises:
        MatchError: content is neither str nor bytes
    """
    if isinstance(content, (bytes, bytearray)):
        content = bytes(content).decode('utf-8', errors='replace')
    elif not isinstance(content, str):
        raise MatchError(f"Cannot match credentials in {type(content).__name__}")

    pairs = []
    for match in CredentialPatterns.AWS_CREDENTIAL_PAIR.finditer(content):
        fields = CredentialPatterns.WHITESPACE_RUN.split(match.group(0), maxsplit=1)
        if len(fields) == 2:
            pairs.append((fields[0], fields[1]))
    return pairs


# ===================================================================
# REPOSITORY QUERIES
# ===================================================================

class GitRepository(ABC):
    """
    Commit-qualified queries against a local repository.

    None of these operations touch the working tree or HEAD, so any
    number of them may run concurrently against the same repository.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    @abstractmethod
    async def list_branches(self) -> List[str]:
        """Remote-tracking branch names without the remote prefix."""

    @abstractmethod
    async def list_commits(self, branch: str) -> List[str]:
        """Every commit reachable from the branch tip, each listed once."""

    @abstractmethod
    async def list_files(self, commit: str) -> List[str]:
        """Every file path in the full recursive tree of the commit."""

    @abstractmethod
    async def read_file(self, commit: str, file: str) -> bytes:
        """Exact content of the file as it existed at the commit."""


def _dedupe(items: List[str]) -> List[str]:
    return list(dict.fromkeys(items))


def _branch_refs_from_remotes(full_refs: List[str]) -> Dict[str, str]:
    """
    Map short branch names to remote-tracking refs.

    refs/remotes/origin/feature/x becomes feature/x. Symbolic HEAD refs
    are dropped and the first remote listing a name wins.
    """
    refs = {}
    for full_ref in full_refs:
        if not full_ref.startswith(REMOTE_REF_PREFIX):
            continue
        _, _, name = full_ref[len(REMOTE_REF_PREFIX):].partition("/")
        if not name or name == "HEAD":
            continue
        if name in refs:
            logger.debug(f"Branch {name} already listed from {refs[name]}, ignoring {full_ref}")
            continue
        refs[name] = full_ref
    return refs


class GitCliRepository(GitRepository):
    """Repository queries backed by `git` subprocesses."""

    def __init__(self, path: Path, timeout: Optional[float] = None):
        super().__init__(path)
        self.timeout = timeout or GIT_COMMAND_TIMEOUT_SECONDS
        self._branch_refs: Optional[Dict[str, str]] = None

    async def _run_git(self, *args: str) -> bytes:
        try:
            proc = await asyncio.create_subprocess_exec(
                "git", "-C", str(self.path), *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise RepositoryAccessError(f"Cannot run git in {self.path}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            if proc.returncode is None:
                proc.kill()
            await proc.wait()
            raise RepositoryAccessError(f"git {args[0]} timed out after {self.timeout}s")
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
            # Reap the child even though this task is being cancelled
            await asyncio.shield(proc.wait())
            raise

        if proc.returncode != 0:
            error_msg = stderr.decode('utf-8', errors='ignore').strip()[:200]
            raise RepositoryAccessError(f"git {' '.join(args)} failed: {error_msg}")

        return stdout

    async def _for_each_ref(self, prefix: str) -> List[str]:
        output = await self._run_git("for-each-ref", "--format=%(refname)", prefix)
        return output.decode('utf-8', errors='surrogateescape').splitlines()

    async def list_branches(self) -> List[str]:
        refs = _branch_refs_from_remotes(await self._for_each_ref("refs/remotes"))

        if not refs:
            # Never cloned, so there is nothing remote to track
            logger.debug(f"No remote-tracking branches in {self.path}, using local branches")
            refs = {
                full_ref[len(LOCAL_REF_PREFIX):]: full_ref
                for full_ref in await self._for_each_ref("refs/heads")
            }

        self._branch_refs = refs
        return list(refs)

    async def _resolve_branch(self, branch: str) -> str:
        if self._branch_refs is None:
            await self.list_branches()
        full_ref = self._branch_refs.get(branch)
        if full_ref is None:
            raise RepositoryAccessError(f"Unknown branch: {branch}")
        return full_ref

    async def list_commits(self, branch: str) -> List[str]:
        full_ref = await self._resolve_branch(branch)
        output = await self._run_git("rev-list", full_ref, "--")
        return _dedupe(output.decode('ascii').split())

    async def list_files(self, commit: str) -> List[str]:
        output = await self._run_git("ls-tree", "-r", "-z", "--full-tree", commit)

        files = []
        for entry in output.split(b"\0"):
            if not entry:
                continue
            # <mode> SP <type> SP <object> TAB <path>
            meta, _, path = entry.partition(b"\t")
            parts = meta.split(b" ")
            if len(parts) == 3 and parts[1] == b"blob":
                files.append(os.fsdecode(path))
        return files

    async def read_file(self, commit: str, file: str) -> bytes:
        try:
            return await self._run_git("cat-file", "blob", f"{commit}:{file}")
        except RepositoryAccessError as e:
            raise BlobNotFoundError(f"{file} not readable at {commit}: {e}") from e


class GitPythonRepository(GitRepository):
    """
    Repository queries backed by GitPython.

    GitPython calls block, so they run in the default executor. A Repo is
    not thread-safe, so one lock serializes them.
    """

    def __init__(self, path: Path):
        super().__init__(path)
        try:
            self.repo = git.Repo(self.path)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise RepositoryAccessError(f"Not a git repository: {self.path}") from e
        self._branch_refs: Optional[Dict[str, str]] = None
        self._lock = threading.Lock()

    async def _run_in_executor(self, func, *args):
        def locked():
            with self._lock:
                return func(*args)

        return await asyncio.get_event_loop().run_in_executor(None, locked)

    def _list_branches_sync(self) -> Dict[str, str]:
        try:
            refs = _branch_refs_from_remotes([ref.path for ref in self.repo.refs])
            if not refs:
                logger.debug(f"No remote-tracking branches in {self.path}, using local branches")
                refs = {head.name: head.path for head in self.repo.heads}
        except (GitCommandError, ValueError, OSError) as e:
            raise RepositoryAccessError(f"Cannot list branches in {self.path}: {e}") from e
        return refs

    def _list_commits_sync(self, branch: str, full_ref: str) -> List[str]:
        try:
            return _dedupe([commit.hexsha for commit in self.repo.iter_commits(full_ref)])
        except (GitCommandError, ValueError) as e:
            raise RepositoryAccessError(f"Cannot walk history of {branch}: {e}") from e

    def _tree(self, commit: str):
        # repo.commit() accepts any 40-hex sha; existence is only checked on .tree
        try:
            return self.repo.commit(commit).tree
        except (BadName, BadObject, ValueError) as e:
            raise RepositoryAccessError(f"Unknown commit: {commit}") from e

    def _list_files_sync(self, commit: str) -> List[str]:
        tree = self._tree(commit)
        try:
            return [item.path for item in tree.traverse() if item.type == "blob"]
        except (BadObject, GitCommandError, ValueError) as e:
            raise RepositoryAccessError(f"Cannot read tree of {commit}: {e}") from e

    def _read_file_sync(self, commit: str, file: str) -> bytes:
        try:
            blob = self._tree(commit) / file
        except (RepositoryAccessError, KeyError) as e:
            raise BlobNotFoundError(f"{file} not found at {commit}") from e

        if blob.type != "blob":
            raise BlobNotFoundError(f"{file} is not a file at {commit}")

        try:
            return blob.data_stream.read()
        except (BadObject, GitCommandError, ValueError) as e:
            raise BlobNotFoundError(f"{file} not readable at {commit}: {e}") from e

    async def list_branches(self) -> List[str]:
        self._branch_refs = await self._run_in_executor(self._list_branches_sync)
        return list(self._branch_refs)

    async def list_commits(self, branch: str) -> List[str]:
        if self._branch_refs is None:
            await self.list_branches()
        full_ref = self._branch_refs.get(branch)
        if full_ref is None:
            raise RepositoryAccessError(f"Unknown branch: {branch}")
        return await self._run_in_executor(self._list_commits_sync, branch, full_ref)

    async def list_files(self, commit: str) -> List[str]:
        return await self._run_in_executor(self._list_files_sync, commit)

    async def read_file(self, commit: str, file: str) -> bytes:
        return await self._run_in_executor(self._read_file_sync, commit, file)


def open_repository(path: Path, backend: str = None) -> GitRepository:
    """
    Build the query backend for a local repository.

    Raises:
        RepositoryAccessError: path is missing or not a repository
    """
    backend = backend or GIT_BACKEND
    path = Path(path)

    if not path.is_dir():
        raise RepositoryAccessError(f"Repository path does not exist: {path}")

    if backend == "cli":
        return GitCliRepository(path)
    if backend == "gitpython":
        return GitPythonRepository(path)
    raise ValueError(f"Unknown git backend: {backend}")


# ===================================================================
# HISTORY SCAN ORCHESTRATION
# ===================================================================

class HistoryScanner:
    """
    Scans every file of every commit on every branch.

    A commit reachable from several branches is scanned once per branch
    and its findings are reported under each of them. Branch walks feed
    (branch, commit) pairs into a bounded queue drained by a fixed pool
    of commit workers.
    """

    def __init__(
        self,
        repository: GitRepository,
        max_concurrent_commits: int = None,
        max_concurrent_branches: int = None,
        show_progress: bool = True
    ):
        self.repository = repository
        self.max_concurrent_commits = max_concurrent_commits or MAX_CONCURRENT_COMMITS
        self.max_concurrent_branches = max_concurrent_branches or MAX_CONCURRENT_BRANCHES
        self.show_progress = show_progress
        self.result = ScanResult()

    async def scan(self) -> ScanResult:
        """
        Run one full pass over the repository.

        Findings accumulate on self.result as they are produced.

        Raises:
            RepositoryAccessError: branches could not be enumerated
        """
        branches = await self.repository.list_branches()

        if not branches:
            logger.warning(f"No branches found in {self.repository.path}")
            self.result.completed = True
            return self.result

        logger.info(f"Scanning history of {len(branches)} branches: {', '.join(branches)}")

        branch_semaphore = asyncio.Semaphore(self.max_concurrent_branches)
        queue = asyncio.Queue(maxsize=self.max_concurrent_commits * 2)

        with tqdm(total=0, desc="Scanning commits", unit="commit", disable=not self.show_progress) as pbar:
            workers = [
                asyncio.ensure_future(self._commit_worker(queue, pbar))
                for _ in range(self.max_concurrent_commits)
            ]
            try:
                outcomes = await asyncio.gather(
                    *[self._enqueue_branch(branch, branch_semaphore, queue, pbar) for branch in branches],
                    return_exceptions=True
                )
                await queue.join()
            finally:
                for worker in workers:
                    worker.cancel()
                await asyncio.gather(*workers, return_exceptions=True)

        for branch, outcome in zip(branches, outcomes):
            if isinstance(outcome, Exception):
                self._record_skip("branch", outcome, branch)

        self.result.completed = True
        logger.info(
            f"Scan complete. {len(self.result.findings)} findings, "
            f"{len(self.result.skips)} skipped units",
            extra={"finding_count": len(self.result.findings)}
        )
        return self.result

    async def _enqueue_branch(
        self,
        branch: str,
        branch_semaphore: asyncio.Semaphore,
        queue: asyncio.Queue,
        pbar: tqdm
    ) -> None:
        async with branch_semaphore:
            commits = await self.repository.list_commits(branch)

        logger.debug(f"Branch {branch}: {len(commits)} commits", extra={"branch": branch})
        self.result.branches_scanned += 1
        pbar.total += len(commits)
        pbar.refresh()

        for commit in commits:
            await queue.put((branch, commit))

    async def _commit_worker(self, queue: asyncio.Queue, pbar: tqdm) -> None:
        while True:
            branch, commit = await queue.get()
            try:
                await self._scan_commit(branch, commit)
            except Exception as e:
                self._record_skip("commit", e, branch, commit)
            finally:
                pbar.update(1)
                queue.task_done()

    async def _scan_commit(self, branch: str, commit: str) -> None:
        files = await self.repository.list_files(commit)
        for file in files:
            await self._scan_file(branch, commit, file)
        self.result.commits_scanned += 1

    async def _scan_file(self, branch: str, commit: str, file: str) -> None:
        try:
            content = await self.repository.read_file(commit, file)
            pairs = match_credentials(content)
        except (BlobNotFoundError, MatchError) as e:
            self._record_skip("file", e, branch, commit, file)
            return
        except Exception as e:
            logger.debug(f"Unexpected error scanning {file}@{commit}", exc_info=True)
            self._record_skip("file", e, branch, commit, file)
            return

        self.result.files_scanned += 1

        for access_key, secret_token in pairs:
            finding = Finding(
                branch=branch,
                commit=commit,
                file=file,
                access_key=access_key,
                secret_token=secret_token
            )
            self.result.findings.append(finding)
            logger.info(
                f"Credential {access_key} in {file} at {commit[:12]} on {branch}",
                extra={"branch": branch, "commit": commit, "path": file}
            )

    def _record_skip(
        self,
        unit: str,
        error: BaseException,
        branch: str,
        commit: Optional[str] = None,
        file: Optional[str] = None
    ) -> None:
        skip = ScanSkip(
            unit=unit,
            branch=branch,
            commit=commit,
            file=file,
            error=f"{type(error).__name__}: {error}"
        )
        self.result.skips.append(skip)

        location = branch
        if commit:
            location += f"@{commit[:12]}"
        if file:
            location += f":{file}"
        logger.warning(
            f"Skipping {unit} {location}: {skip.error}",
            extra={"branch": branch, "commit": commit, "path": file}
        )


async def run_scan(
    repository: GitRepository,
    timeout: Optional[float] = None,
    max_concurrent_commits: int = None,
    max_concurrent_branches: int = None,
    show_progress: bool = True
) -> ScanResult:
    """
    Scan a repository, optionally under a deadline.

    When the deadline passes the findings gathered so far are returned
    with completed=False.
    """
    scanner = HistoryScanner(
        repository,
        max_concurrent_commits=max_concurrent_commits,
        max_concurrent_branches=max_concurrent_branches,
        show_progress=show_progress
    )

    if not timeout:
        return await scanner.scan()

    try:
        return await asyncio.wait_for(scanner.scan(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(
            f"Scan deadline of {timeout}s reached, returning partial results "
            f"({len(scanner.result.findings)} findings)"
        )
        return scanner.result


# ===================================================================
# REPOSITORY ACQUISITION
# ===================================================================

async def github_api_call_with_backoff(func, *args, max_retries: int = None, **kwargs):
    """
    Execute GitHub API call with exponential backoff on rate limit errors.

    Args:
        func: Synchronous PyGithub callable
        *args: Positional arguments for func
        max_retries: Maximum number of attempts
        **kwargs: Keyword arguments for func

    Returns:
        Result of func call
    """
    max_retries = max_retries or GITHUB_API_MAX_RETRIES

    for attempt in range(max_retries):
        try:
            return func(*args, **kwargs)

        except RateLimitExceededException:
            if attempt == max_retries - 1:
                raise
            wait_time = GITHUB_API_BACKOFF_BASE ** attempt
            logger.warning(f"GitHub rate limit exceeded (attempt {attempt + 1}/{max_retries})")
            logger.info(f"Backing off for {wait_time:.1f}s")
            await asyncio.sleep(wait_time)

        except GithubException as e:
            if e.status == 403 and 'rate limit' in str(e).lower() and attempt < max_retries - 1:
                wait_time = GITHUB_API_BACKOFF_BASE ** attempt
                logger.warning(f"GitHub API error (attempt {attempt + 1}/{max_retries}): {e}")
                await asyncio.sleep(wait_time)
            else:
                raise

    raise CloneError(f"GitHub API call failed after {max_retries} attempts")


async def resolve_clone_url(source: str, token: Optional[str] = None) -> str:
    """
    Turn a scan source into something `git clone` accepts.

    An owner/repo shorthand is looked up through the GitHub API. A token,
    when given, is embedded for https://github.com URLs.

    Raises:
        CloneError: the GitHub repository could not be resolved
    """
    clone_url = source

    if GITHUB_SHORTHAND.fullmatch(source):
        github_client = Github(auth=Auth.Token(token)) if token else Github()
        try:
            repo = await github_api_call_with_backoff(github_client.get_repo, source)
            clone_url = repo.clone_url
            logger.info(f"Resolved {source} to {clone_url}")
        except GithubException as e:
            raise CloneError(f"Cannot resolve GitHub repository {source}: {e}") from e
        finally:
            github_client.close()

    if token and clone_url.startswith("https://github.com/"):
        clone_url = clone_url.replace("https://", f"https://x-access-token:{token}@", 1)

    return clone_url


async def clone_repository_async(clone_url: str, repo_dir: Path, display_name: str = None) -> Path:
    """
    Clone the full history of a repository with timeout and retry logic.

    Args:
        clone_url: URL or path accepted by git clone
        repo_dir: Destination directory (must not be in use)
        display_name: Name used in logs, keeps tokens out of them

    Returns:
        Path to the cloned repository

    Raises:
        CloneError: every attempt failed
    """
    display_name = display_name or clone_url
    env = dict(os.environ, GIT_TERMINAL_PROMPT="0")

    for attempt in range(RETRY_ATTEMPTS):
        if repo_dir.exists():
            shutil.rmtree(repo_dir, ignore_errors=True)

        try:
            logger.info(f"Cloning {display_name} (attempt {attempt + 1}/{RETRY_ATTEMPTS})")

            proc = await asyncio.create_subprocess_exec(
                "git", "clone", "--no-tags", "--quiet",
                clone_url,
                str(repo_dir),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env
            )

            try:
                stdout, stderr = await asyncio.wait_for(
                    proc.communicate(),
                    timeout=CLONE_TIMEOUT_SECONDS
                )
            except asyncio.TimeoutError:
                logger.warning(f"Clone timeout for {display_name}")
                proc.kill()
                await proc.wait()
                stderr = b""

            if proc.returncode == 0:
                logger.info(f"✓ Successfully cloned {display_name}")
                return repo_dir

            error_msg = stderr.decode('utf-8', errors='ignore').strip()[:200]
            logger.warning(f"Clone failed for {display_name}: {error_msg}")

        except OSError as e:
            logger.error(f"Cannot run git clone for {display_name}: {e}")

        if attempt < RETRY_ATTEMPTS - 1:
            await asyncio.sleep(RETRY_DELAY_SECONDS * (attempt + 1))

    raise CloneError(f"Failed to clone {display_name} after {RETRY_ATTEMPTS} attempts")


async def acquire_repository(source: str, clone_base: Path, token: Optional[str] = None) -> Path:
    """
    Produce a local repository path for a scan source.

    Existing local directories are scanned in place, anything else is
    cloned under clone_base.
    """
    local_path = Path(source).expanduser()
    if local_path.is_dir():
        logger.info(f"Scanning local repository in place: {local_path.resolve()}")
        return local_path.resolve()

    clone_url = await resolve_clone_url(source, token)
    return await clone_repository_async(clone_url, clone_base / "repo", display_name=source)


# ===================================================================
# REPORT GENERATION
# ===================================================================

AWS_REMEDIATION = {
    "severity": "CRITICAL",
    "immediate_actions": [
        "1. Deactivate the exposed access key in the AWS IAM console",
        "2. Review CloudTrail for activity by the key since the first commit that contains it",
        "3. Issue a new access key and roll it out to the applications that need it",
        "4. Delete the old access key once the new one is confirmed working",
        "5. Purge the credential from every branch listed in this report"
    ],
    "prevention": [
        "Prefer IAM roles for EC2/ECS/Lambda over long-lived access keys",
        "Keep credentials in AWS Secrets Manager or Parameter Store",
        "Install a pre-commit hook (git-secrets, detect-secrets)"
    ],
    "rotation_command": "aws iam create-access-key --user-name <user>",
    "docs_url": "https://docs.aws.amazon.com/IAM/latest/UserGuide/id_credentials_access-keys.html"
}

GIT_HISTORY_CLEANUP = {
    "tool": "git-filter-repo (recommended)",
    "installation": "pip install git-filter-repo",
    "commands": [
        "# Work on a fresh mirror clone",
        "git clone --mirror <repo-url> repo-cleanup.git",
        "cd repo-cleanup.git",
        "",
        "# Replace the leaked values in every commit of every branch",
        "git filter-repo --replace-text <(echo 'SECRET_VALUE==>***REMOVED***')",
        "",
        "# Rewrite the remote (coordinate with the team first)",
        "git push --force --mirror",
    ],
    "note": "Rotating the key is mandatory; rewriting history does not revoke it.",
    "alternative": "BFG Repo-Cleaner: https://rtyley.github.io/bfg-repo-cleaner/"
}

CSV_FIELDNAMES = ["branch", "commit", "file", "access_key", "secret_token", "fingerprint"]


def build_json_report(result: ScanResult, source: str = "", redact: bool = False) -> Dict[str, Any]:
    """Assemble the JSON report document for a scan result."""
    findings_by_commit = Counter(finding.commit for finding in result.findings)

    return {
        "scan_metadata": {
            "timestamp": datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            "source": source,
            "scanner_version": __version__,
            "completed": result.completed,
            "branches_scanned": result.branches_scanned,
            "commits_scanned": result.commits_scanned,
            "files_scanned": result.files_scanned,
        },
        "summary": {
            "total_findings": len(result.findings),
            "unique_credentials": len(result.unique_credentials()),
            "by_branch": result.findings_by_branch(),
            "top_commits": dict(findings_by_commit.most_common(10)),
            "skipped_units": dict(Counter(skip.unit for skip in result.skips)),
        },
        "remediation": AWS_REMEDIATION,
        "git_history_cleanup": GIT_HISTORY_CLEANUP,
        "findings": [finding.to_dict(redact=redact) for finding in result.findings],
        "skips": [skip.to_dict() for skip in result.skips],
    }


async def generate_json_report(
    result: ScanResult,
    output_path: Path,
    source: str = "",
    redact: bool = False
) -> None:
    """Write the JSON report."""
    report = build_json_report(result, source, redact)
    async with aiofiles.open(output_path, 'w', encoding='utf-8') as f:
        await f.write(json.dumps(report, indent=2))
    logger.info(f"JSON report written to {output_path}")


async def generate_csv_report(result: ScanResult, output_path: Path, redact: bool = False) -> None:
    """Write one CSV row per finding."""
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=CSV_FIELDNAMES)
    writer.writeheader()
    for finding in result.findings:
        writer.writerow(finding.to_dict(redact=redact))

    async with aiofiles.open(output_path, 'w', newline='', encoding='utf-8') as f:
        await f.write(buffer.getvalue())
    logger.info(f"CSV report written to {output_path}")


async def generate_report(
    result: ScanResult,
    output_path: Path,
    output_format: str = None,
    source: str = "",
    redact: bool = None
) -> List[Path]:
    """
    Generate reports in the requested formats.

    Args:
        result: Scan result to render
        output_path: Base path for output files
        output_format: json, csv or all
        source: Scanned source, recorded in JSON metadata
        redact: Mask secret tokens in the output

    Returns:
        Paths of the files written
    """
    output_format = output_format or OUTPUT_FORMAT
    redact = REDACT_SECRETS if redact is None else redact

    if output_format not in SUPPORTED_OUTPUT_FORMATS:
        raise ValueError(f"Unknown output format: {output_format}")

    formats = ["json", "csv"] if output_format == "all" else [output_format]
    written = []

    for fmt in formats:
        report_path = Path(output_path).with_suffix(f".{fmt}")
        if fmt == "json":
            await generate_json_report(result, report_path, source, redact)
        else:
            await generate_csv_report(result, report_path, redact)
        written.append(report_path)

    return written


# ===================================================================
# COMMAND LINE INTERFACE
# ===================================================================

def parse_arguments(argv: Optional[List[str]] = None):
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description='Scan every commit on every branch of a Git repository for leaked AWS credentials',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
SOURCE may be a clone URL, a GitHub owner/repo name or a local directory.
Local directories are scanned in place; everything else is cloned into a
temporary directory that is removed afterwards.

ENVIRONMENT VARIABLES:
  GITHUB_TOKEN                 Token for private GitHub repositories
  GIT_BACKEND                  cli|gitpython (default: cli)
  MAX_CONCURRENT_COMMITS       Parallel commit scans (default: 8)
  MAX_CONCURRENT_BRANCHES      Parallel history walks (default: 4)
  GIT_COMMAND_TIMEOUT_SECONDS  Timeout per git query (default: 120)
  SCAN_TIMEOUT_SECONDS         Deadline for the whole scan (default: none)

EXIT CODES:
  0   Success
  1   Error (clone failed, no branches could be listed, etc.)
  130 Interrupted by user (Ctrl+C)
        '''
    )

    parser.add_argument(
        'source',
        help='Repository URL, GitHub owner/repo, or local repository path'
    )

    parser.add_argument(
        '--backend',
        choices=SUPPORTED_BACKENDS,
        default=GIT_BACKEND,
        help=f'Git query backend (default: {GIT_BACKEND})'
    )

    parser.add_argument(
        '--max-concurrent-commits',
        type=int,
        default=MAX_CONCURRENT_COMMITS,
        help=f'Commits scanned in parallel (default: {MAX_CONCURRENT_COMMITS})'
    )

    parser.add_argument(
        '--max-concurrent-branches',
        type=int,
        default=MAX_CONCURRENT_BRANCHES,
        help=f'Branch histories walked in parallel (default: {MAX_CONCURRENT_BRANCHES})'
    )

    parser.add_argument(
        '--timeout',
        type=float,
        default=SCAN_TIMEOUT_SECONDS,
        metavar='SECONDS',
        help='Stop the scan after this many seconds and report partial results'
    )

    parser.add_argument(
        '--output-file',
        type=Path,
        default=OUTPUT_FILE,
        help=f'Report output path (default: {OUTPUT_FILE})'
    )

    parser.add_argument(
        '--output-format',
        choices=SUPPORTED_OUTPUT_FORMATS,
        default=OUTPUT_FORMAT,
        help=f'Output format (default: {OUTPUT_FORMAT})'
    )

    parser.add_argument(
        '--log-format',
        choices=['text', 'json'],
        default=LOG_FORMAT,
        help=f'Logging format (default: {LOG_FORMAT})'
    )

    parser.add_argument(
        '--redact',
        action='store_true',
        default=REDACT_SECRETS,
        help='Mask secret tokens in reports'
    )

    parser.add_argument(
        '--no-progress',
        action='store_true',
        help='Disable the progress bar'
    )

    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose debug logging'
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )

    return parser.parse_args(argv)


async def scan_source_async(args, clone_base: Path) -> ScanResult:
    """Acquire, scan and report on the source named in the arguments."""
    repo_dir = await acquire_repository(args.source, clone_base, GITHUB_TOKEN)
    repository = open_repository(repo_dir, args.backend)

    result = await run_scan(
        repository,
        timeout=args.timeout,
        max_concurrent_commits=args.max_concurrent_commits,
        max_concurrent_branches=args.max_concurrent_branches,
        show_progress=not args.no_progress
    )

    await generate_report(
        result,
        args.output_file,
        args.output_format,
        source=args.source,
        redact=args.redact
    )
    return result


# ===================================================================
# MAIN ENTRY POINT
# ===================================================================

def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point with validation and error handling."""
    args = parse_arguments(argv)

    setup_logging(args.log_format)
    if args.verbose:
        logger.setLevel(logging.DEBUG)

    logger.info("=" * 70)
    logger.info("GIT HISTORY CREDENTIAL SCANNER")
    logger.info("=" * 70)
    logger.info(f"Source: {args.source}")
    logger.info(f"Backend: {args.backend}")
    logger.info(f"Max concurrent commits: {args.max_concurrent_commits}")
    logger.info(f"Output format: {args.output_format}")
    logger.info("=" * 70)

    clone_base = Path(tempfile.mkdtemp(prefix="history_scan_"))

    try:
        result = asyncio.run(scan_source_async(args, clone_base))

        logger.info("=" * 70)
        if result.completed:
            logger.info("SCAN COMPLETED SUCCESSFULLY")
        else:
            logger.info("SCAN STOPPED AT DEADLINE - RESULTS ARE PARTIAL")
        logger.info(
            f"Findings: {len(result.findings)} "
            f"({len(result.unique_credentials())} unique credentials) | "
            f"Skipped units: {len(result.skips)}"
        )
        logger.info("=" * 70)
        return 0

    except CloneError as e:
        logger.error(f"Repository acquisition failed: {e}")
        return 1
    except RepositoryAccessError as e:
        logger.error(f"Cannot enumerate branches: {e}")
        return 1
    except KeyboardInterrupt:
        logger.warning("Scan interrupted by user")
        return 130
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1
    finally:
        logger.debug(f"Cleaning up clone directory: {clone_base}")
        shutil.rmtree(clone_base, ignore_errors=True)


if __name__ == "__main__":
    sys.exit(main())
