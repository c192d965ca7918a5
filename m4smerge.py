#!/usr/bin/env python3
"""
m4smerge - Rebuild playable videos from Bilibili .m4s cache segments
Pairs the audio and video segment of every cached title and muxes them
with MP4Box, falling back to an ffmpeg stream copy. Streams are never
re-encoded.
"""

import argparse
import configparser
import hashlib
import json
import logging
import os
import re
import shutil
import subprocess
import sys
import tempfile
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from danmaku import DanmakuAttacher

logger = logging.getLogger(__name__)

SEGMENT_EXT = '.m4s'
# The desktop client pads every cached segment with these bytes.
SEGMENT_PADDING = b'000000000'
METADATA_FILES = ('entry.json', 'videoInfo.json', '.videoInfo')
DANMAKU_FILE = 'danmaku.xml'
# Desktop client quality ids: 302xx are audio (30250 Dolby, 30251 Hi-Res).
AUDIO_QUALITY_IDS = range(30200, 30300)
LEDGER_NAME = '.m4smerge.json'
SELECT = 'select'
OUTPUT_EXTS = ('mp4', 'mkv', 'mov')
CHUNK_SIZE = 1024 * 1024

PROCEED = 'proceed'
OVERWRITE = 'overwrite'
RENAME = 'rename'
SKIP = 'skip'
DUPLICATE = 'duplicate'

_UNSAFE_TITLE = re.compile(r'[^\w \-]')
_QUALITY_SUFFIX = re.compile(r'-(\d+)$')


class M4SMergeError(Exception):
    """Base class for m4smerge errors."""


class ConfigError(M4SMergeError):
    """Configuration problem that stops the run before any merge."""


class BackendError(M4SMergeError):
    """A single backend could not produce the output."""

    def __init__(self, backend: str, message: str, output: str = ''):
        super().__init__(f"{backend}: {message}")
        self.backend = backend
        self.output = output


class BackendNotFound(BackendError):
    """Executable missing or not executable."""


class BackendFailed(BackendError):
    """Process exited with a non-zero status."""

    def __init__(self, backend: str, returncode: int, output: str = '', message: str = ''):
        super().__init__(backend, message or f"exited with status {returncode}", output)
        self.returncode = returncode


class BackendTimeout(BackendFailed):
    """Process was killed after exceeding the timeout."""


class MuxError(M4SMergeError):
    """Every configured backend failed for one title."""

    def __init__(self, errors: List[BackendError], cancelled: bool = False):
        self.errors = list(errors)
        self.cancelled = cancelled
        if self.errors:
            message = '; '.join(str(e) for e in self.errors)
        else:
            message = 'no backend could be tried'
        if cancelled:
            message = f"cancelled ({message})"
        super().__init__(message)

    @property
    def diagnostics(self) -> str:
        """Last lines of captured process output, if any."""
        for error in reversed(self.errors):
            if error.output.strip():
                return _tail(error.output)
        return ''


def _tail(text: str, lines: int = 6) -> str:
    return '\n'.join(text.strip().splitlines()[-lines:])


@dataclass(frozen=True)
class CacheEntry:
    """One cached title with its segment pair."""
    root: Path
    title: str
    video: Path
    audio: Path
    subtitle: Optional[Path] = None
    index: int = 0


@dataclass(frozen=True)
class ScanSkip:
    """A cache directory that could not be turned into a CacheEntry."""
    path: Path
    reason: str
    index: int = 0


@dataclass
class MergeTask:
    entry: CacheEntry
    candidate: Path
    output: Path
    decision: str
    key: str
    subtitle: Optional[Path] = None


@dataclass(frozen=True)
class MuxResult:
    backend: str
    returncode: int
    elapsed: float
    output: Path
    size: int


# --------------------------------------------------------------------------
# scanning


def sanitize_title(text: str) -> str:
    """Replace anything but letters, digits, space, hyphen and underscore."""
    return _UNSAFE_TITLE.sub('_', text or '').strip()


def classify_segment(name: str) -> Optional[str]:
    """Return 'video', 'audio' or None for a cache file name."""
    lower = name.lower()
    if not lower.endswith(SEGMENT_EXT):
        return None
    stem = lower[:-len(SEGMENT_EXT)]
    if stem in ('video', 'audio'):
        return stem
    if match := _QUALITY_SUFFIX.search(stem):
        return 'audio' if int(match.group(1)) in AUDIO_QUALITY_IDS else 'video'
    return None


def _title_from_metadata(info) -> Optional[str]:
    if not isinstance(info, dict):
        return None
    title = str(info.get('title') or info.get('groupTitle') or '').strip()
    page = info.get('page_data')
    if isinstance(page, dict):
        part = str(page.get('part') or '').strip()
        if part and part != title:
            title = f"{title}-{part}" if title else part
    return title or None


def _search_dirs(directory: Path, root: Path) -> List[Path]:
    # metadata may sit one level up (Android keeps segments in a quality dir)
    if directory == root:
        return [directory]
    return [directory, directory.parent]


def read_title(directory: Path, root: Path) -> Optional[str]:
    """Title from the client's metadata JSON next to or above the segments."""
    for folder in _search_dirs(directory, root):
        for name in METADATA_FILES:
            path = folder / name
            if not path.is_file():
                continue
            try:
                info = json.loads(path.read_text(encoding='utf-8-sig'))
            except (OSError, ValueError) as e:
                logger.warning(f"unreadable metadata {path}: {e}")
                continue
            title = _title_from_metadata(info)
            if title:
                return title
    return None


def find_subtitle(directory: Path, root: Path) -> Optional[Path]:
    """Locate the danmaku XML that belongs to a title directory."""
    for folder in _search_dirs(directory, root):
        candidate = folder / DANMAKU_FILE
        if candidate.is_file():
            return candidate
    xmls = sorted(p for p in directory.glob('*.xml') if p.is_file())
    if len(xmls) == 1:
        return xmls[0]
    return None


def _nonempty(path: Path) -> bool:
    try:
        return path.is_file() and path.stat().st_size > 0
    except OSError:
        return False


def _has_segments(directory: Path) -> bool:
    try:
        return any(p.name.lower().endswith(SEGMENT_EXT) for p in directory.iterdir())
    except OSError:
        return False


def _subtree_has_segments(directory: Path) -> bool:
    for _, _, files in os.walk(directory):
        if any(name.lower().endswith(SEGMENT_EXT) for name in files):
            return True
    return False


def scan_cache(root: Path, exclude: Iterable[Path] = (),
               on_skip: Optional[Callable[[ScanSkip], None]] = None) -> Iterator[CacheEntry]:
    """
    Walk the cache root and yield one CacheEntry per complete segment pair.

    Directories are visited in sorted, depth-first order; the shared index
    of entries and skips records that order. Incomplete directories are
    logged and passed to on_skip instead of being yielded, and so is a
    top-level folder with no segment anywhere below it.
    """
    root = Path(root).resolve()
    excluded = {Path(p).resolve() for p in exclude}
    index = 0

    def skip(path: Path, reason: str):
        nonlocal index
        logger.warning(f"skipping {path}: {reason}")
        if on_skip is not None:
            on_skip(ScanSkip(path=path, reason=reason, index=index))
        index += 1

    for current, dirs, files in os.walk(root):
        directory = Path(current)
        dirs[:] = sorted(d for d in dirs if (directory / d).resolve() not in excluded)

        if directory.parent == root and not _subtree_has_segments(directory):
            skip(directory, 'no audio or video segment')
            dirs[:] = []
            continue

        if not any(name.lower().endswith(SEGMENT_EXT) for name in files):
            if any(name in METADATA_FILES for name in files) and \
                    not any(_has_segments(directory / d) for d in dirs):
                skip(directory, 'no audio or video segment')
            continue

        found: Dict[str, Path] = {}
        for name in sorted(files):
            kind = classify_segment(name)
            path = directory / name
            if kind and kind not in found and _nonempty(path):
                found[kind] = path

        video, audio = found.get('video'), found.get('audio')
        if video is None and audio is None:
            skip(directory, 'no audio or video segment')
            continue
        if video is None:
            skip(directory, 'missing video segment')
            continue
        if audio is None:
            skip(directory, 'missing audio segment')
            continue

        title = sanitize_title(read_title(directory, root) or '') \
            or sanitize_title(directory.name) or 'untitled'
        entry = CacheEntry(
            root=directory,
            title=title,
            video=video,
            audio=audio,
            subtitle=find_subtitle(directory, root),
            index=index,
        )
        index += 1
        logger.debug(f"found {entry.title}: {video.name} + {audio.name}")
        yield entry


def stage_segment(path: Path, staged: Path) -> Path:
    """Return a muxable copy of a segment, stripping the client padding."""
    with open(path, 'rb') as src:
        if src.read(len(SEGMENT_PADDING)) != SEGMENT_PADDING:
            return path
        staged.parent.mkdir(parents=True, exist_ok=True)
        logger.debug(f"unpadding {path} to {staged}")
        with open(staged, 'wb') as dst:
            shutil.copyfileobj(src, dst, CHUNK_SIZE)
    return staged


# --------------------------------------------------------------------------
# duplicate detection and output paths


def file_digest(path: Path) -> str:
    """sha256 of a file's contents."""
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b''):
            digest.update(chunk)
    return digest.hexdigest()


def input_key(video: Path, audio: Path, subtitle: Optional[Path] = None) -> str:
    """Identify one merge by its inputs."""
    parts = []
    for path in (video, audio, subtitle):
        if path is None:
            parts.append(None)
            continue
        st = path.stat()
        parts.append([str(path.resolve()), st.st_size, st.st_mtime_ns])
    return hashlib.sha1(json.dumps(parts).encode('utf-8')).hexdigest()


class MergeLedger:
    """Records of successful merges kept in the output directory."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()
        self.records: Dict[str, Dict] = self._load()

    def _load(self) -> Dict[str, Dict]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding='utf-8'))
        except (OSError, ValueError) as e:
            logger.warning(f"ignoring unreadable ledger {self.path}: {e}")
            return {}
        records = data.get('merges') if isinstance(data, dict) else None
        if not isinstance(records, dict):
            logger.warning(f"ignoring malformed ledger {self.path}")
            return {}
        return records

    def lookup(self, key: str) -> Optional[Dict]:
        with self._lock:
            record = self.records.get(key)
            return dict(record) if isinstance(record, dict) else None

    def record(self, key: str, result: MuxResult, digest: str):
        """Remember a finished merge and persist the ledger."""
        with self._lock:
            self.records[key] = {
                'output': result.output.name,
                'size': result.size,
                'sha256': digest,
                'backend': result.backend,
                'merged_at': datetime.now(timezone.utc).isoformat(timespec='seconds'),
            }
            self._save()

    def _save(self):
        tmp = self.path.with_name(self.path.name + '.tmp')
        with open(tmp, 'w', encoding='utf-8') as f:
            json.dump({'merges': self.records}, f, indent=2, ensure_ascii=False)
        os.replace(tmp, self.path)


class DuplicateClassifier:
    """Decide whether an existing output is the result of the same merge."""

    def __init__(self, ledger: MergeLedger):
        self.ledger = ledger

    def is_duplicate(self, path: Path, key: str) -> bool:
        record = self.ledger.lookup(key)
        if record is None or record.get('output') != path.name:
            return False
        try:
            size = path.stat().st_size
        except OSError:
            return False
        if not path.is_file() or size != record.get('size'):
            return False
        return file_digest(path) == record.get('sha256')

    def find_duplicate(self, key: str, outdir: Path) -> Optional[Path]:
        """Path of a previous, unchanged output for these inputs."""
        record = self.ledger.lookup(key)
        if record is None or not record.get('output'):
            return None
        path = outdir / record['output']
        return path if self.is_duplicate(path, key) else None


def next_free_path(path: Path, reserved: Set[Path]) -> Path:
    """First 'name_N.ext' that neither exists nor is reserved."""
    counter = 1
    while True:
        candidate = path.with_name(f"{path.stem}_{counter}{path.suffix}")
        if not candidate.exists() and candidate not in reserved:
            return candidate
        counter += 1


def resolve_output(entry: CacheEntry, candidate: Path, classifier: DuplicateClassifier,
                   skip: bool = False, overlay: bool = False,
                   subtitle: Optional[Path] = None,
                   reserved: Optional[Set[Path]] = None) -> MergeTask:
    """
    Apply the skip/overlay/rename policy to a candidate output path.

    An unchanged earlier result always wins (DUPLICATE). Otherwise an
    existing file is skipped when skip is set, replaced when only overlay
    is set, and renamed around when neither is. Paths reserved earlier in
    the same run are always renamed around.
    """
    reserved = reserved if reserved is not None else set()
    key = input_key(entry.video, entry.audio, subtitle)

    def task(decision: str, output: Path) -> MergeTask:
        return MergeTask(entry=entry, candidate=candidate, output=output,
                         decision=decision, key=key, subtitle=subtitle)

    existing = classifier.find_duplicate(key, candidate.parent)
    if existing is not None:
        return task(DUPLICATE, existing)
    if candidate in reserved:
        return task(RENAME, next_free_path(candidate, reserved))
    if not candidate.exists():
        return task(PROCEED, candidate)
    if skip:
        return task(SKIP, candidate)
    if overlay:
        return task(OVERWRITE, candidate)
    return task(RENAME, next_free_path(candidate, reserved))


# --------------------------------------------------------------------------
# muxing backends


class Backend:
    """An external muxer executable."""

    name = 'backend'
    default_names: Tuple[str, ...] = ()
    subtitle_exts: Tuple[str, ...] = ()
    output_exts: Tuple[str, ...] = ()

    def __init__(self, executable: str):
        self.executable = executable

    def __repr__(self):
        return f"{type(self).__name__}({self.executable!r})"

    def available(self) -> bool:
        return shutil.which(self.executable) is not None

    def supports(self, subtitle: Optional[Path], output: Path) -> bool:
        if self.output_exts and output.suffix.lower() not in self.output_exts:
            return False
        return subtitle is None or subtitle.suffix.lower() in self.subtitle_exts

    def build_args(self, video: Path, audio: Path, subtitle: Optional[Path],
                   output: Path) -> List[str]:
        raise NotImplementedError


class MP4BoxBackend(Backend):
    """GPAC MP4Box, the same muxer the desktop client uses."""

    name = 'mp4box'
    default_names = ('MP4Box', 'mp4box')
    subtitle_exts = ('.srt', '.vtt', '.ttxt')
    output_exts = ('.mp4', '.m4v', '.mov')

    def build_args(self, video, audio, subtitle, output):
        args = [self.executable, '-quiet',
                '-add', f"{video}#video",
                '-add', f"{audio}#audio"]
        if subtitle is not None:
            args += ['-add', str(subtitle)]
        args += ['-new', str(output)]
        return args


class FFmpegBackend(Backend):
    """ffmpeg restricted to stream copy."""

    name = 'ffmpeg'
    default_names = ('ffmpeg',)
    subtitle_exts = ('.ass', '.ssa', '.srt', '.vtt')

    def build_args(self, video, audio, subtitle, output):
        args = [self.executable, '-hide_banner', '-nostdin', '-loglevel', 'error', '-y',
                '-i', str(video), '-i', str(audio)]
        if subtitle is not None:
            args += ['-i', str(subtitle)]
        args += ['-map', '0:v:0', '-map', '1:a:0']
        if subtitle is not None:
            args += ['-map', '2:s:0']
        args += ['-c:v', 'copy', '-c:a', 'copy']
        if subtitle is not None:
            codec = 'mov_text' if output.suffix.lower() in MP4BoxBackend.output_exts else 'copy'
            args += ['-c:s', codec, '-disposition:s:0', '0']
        args.append(str(output))
        return args


BACKEND_TYPES = (MP4BoxBackend, FFmpegBackend)


def resolve_executable(value: Optional[str], names: Iterable[str],
                       prompt: Optional[Callable[[str], Optional[str]]] = None) -> Optional[str]:
    """
    Turn a configured backend setting into an executable path.

    An explicit value is used as given (searched on PATH when it is a bare
    name), SELECT asks the prompt callable, and an empty value looks the
    default names up on PATH.
    """
    names = tuple(names)
    if value == SELECT:
        if prompt is None:
            raise ConfigError(f"interactive selection of {names[0]} is not available")
        value = prompt(names[0])
        if not value:
            raise ConfigError(f"no {names[0]} executable selected")
    if value:
        return shutil.which(value) or value
    for name in names:
        found = shutil.which(name)
        if found:
            return found
    return None


def build_backends(opt: Dict, prompt: Optional[Callable[[str], Optional[str]]] = None) -> List[Backend]:
    """Ordered backend list: MP4Box first, ffmpeg as fallback."""
    backends = []
    for backend_type in BACKEND_TYPES:
        exe = resolve_executable(opt.get(backend_type.name), backend_type.default_names, prompt)
        if exe:
            backends.append(backend_type(exe))
        else:
            logger.warning(f"{backend_type.default_names[0]} not found, backend disabled")
    return backends


def prompt_executable(name: str) -> Optional[str]:
    """Ask on the terminal for the path of a backend executable."""
    try:
        answer = input(f"path to the {name} executable: ")
    except EOFError:
        return None
    return answer.strip().strip('"\'') or None


class Muxer:
    """Runs backends in order until one produces the output."""

    def __init__(self, backends: List[Backend], timeout: Optional[float] = 600.0):
        self.backends = list(backends)
        self.timeout = timeout
        self._procs: Set[subprocess.Popen] = set()
        self._lock = threading.Lock()
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self):
        """Stop trying backends and kill every running process."""
        self._cancelled.set()
        with self._lock:
            procs = list(self._procs)
        for proc in procs:
            logger.debug(f"killing pid {proc.pid}")
            proc.kill()

    def run(self, backend: Backend, args: List[str]) -> Tuple[int, str]:
        """Execute one backend command with the configured timeout."""
        logger.debug(f"sys > {' '.join(str(a) for a in args)}")
        try:
            proc = subprocess.Popen(
                args,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors='replace',
            )
        except OSError as e:
            raise BackendNotFound(backend.name, f"cannot execute {args[0]}: {e}")

        with self._lock:
            self._procs.add(proc)
        try:
            if self.cancelled:
                proc.kill()
            try:
                output, _ = proc.communicate(timeout=self.timeout)
            except subprocess.TimeoutExpired:
                proc.kill()
                output, _ = proc.communicate()
                raise BackendTimeout(backend.name, proc.returncode, output or '',
                                     f"timed out after {self.timeout}s")
        finally:
            with self._lock:
                self._procs.discard(proc)

        output = output or ''
        for line in output.splitlines():
            logger.debug(f"sys < {line}")
        return proc.returncode, output

    def mux(self, video: Path, audio: Path, subtitle: Optional[Path], output: Path) -> MuxResult:
        """Produce output from the segment pair, falling back through the backends."""
        output = Path(output)
        partial = output.with_name(f".{output.stem}.partial{output.suffix}")
        started = time.monotonic()
        errors: List[BackendError] = []

        for backend in self.backends:
            if self.cancelled:
                raise MuxError(errors, cancelled=True)
            if not backend.supports(subtitle, output):
                logger.debug(f"{backend.name} cannot write {output.suffix} with {subtitle}")
                errors.append(BackendError(backend.name, 'unsupported output or subtitle format'))
                continue

            try:
                returncode, captured = self.run(
                    backend, backend.build_args(video, audio, subtitle, partial))
            except BackendError as e:
                _discard(partial)
                logger.warning(f"{e}")
                errors.append(e)
                continue

            if returncode != 0 or not partial.is_file():
                _discard(partial)
                error = BackendFailed(backend.name, returncode, captured,
                                      '' if returncode else 'produced no output file')
                logger.warning(f"{error}")
                errors.append(error)
                continue

            try:
                os.replace(partial, output)
            except OSError:
                _discard(partial)
                raise
            return MuxResult(
                backend=backend.name,
                returncode=returncode,
                elapsed=time.monotonic() - started,
                output=output,
                size=output.stat().st_size,
            )

        raise MuxError(errors, cancelled=self.cancelled)


def _discard(path: Path):
    try:
        path.unlink()
    except FileNotFoundError:
        pass


# --------------------------------------------------------------------------
# batch


class BatchReport:
    """Thread-safe accumulator for the results of one run."""

    def __init__(self):
        self._lock = threading.Lock()
        self._results: List[Tuple[int, str, MuxResult]] = []
        self._failures: List[Tuple[int, str, str, bool]] = []
        self._skipped: List[Tuple[int, Path]] = []
        self._duplicates: List[Tuple[int, Path]] = []
        self._started = time.monotonic()
        self.elapsed: Optional[float] = None
        self.cancelled = False

    def add_success(self, index: int, decision: str, result: MuxResult):
        with self._lock:
            self._results.append((index, decision, result))

    def add_failure(self, index: int, name: str, reason: str, merge: bool = True):
        with self._lock:
            self._failures.append((index, name, reason, merge))

    def add_scan_skip(self, skip: ScanSkip):
        self.add_failure(skip.index, str(skip.path), skip.reason, merge=False)

    def add_skipped(self, index: int, path: Path):
        with self._lock:
            self._skipped.append((index, path))

    def add_duplicate(self, index: int, path: Path):
        with self._lock:
            self._duplicates.append((index, path))

    def finish(self) -> 'BatchReport':
        self.elapsed = time.monotonic() - self._started
        return self

    @property
    def results(self) -> List[MuxResult]:
        with self._lock:
            return [r for _, _, r in sorted(self._results, key=lambda item: item[0])]

    @property
    def successes(self) -> List[Path]:
        return [r.output for r in self.results]

    @property
    def failures(self) -> List[Tuple[str, str]]:
        with self._lock:
            ordered = sorted(self._failures, key=lambda item: item[0])
        return [(name, reason) for _, name, reason, _ in ordered]

    @property
    def skipped(self) -> List[Path]:
        with self._lock:
            return [p for _, p in sorted(self._skipped, key=lambda item: item[0])]

    @property
    def duplicates(self) -> List[Path]:
        with self._lock:
            return [p for _, p in sorted(self._duplicates, key=lambda item: item[0])]

    @property
    def counts(self) -> Dict[str, int]:
        with self._lock:
            return {
                'merged': len(self._results),
                'failed': len(self._failures),
                'skipped': len(self._skipped),
                'duplicate': len(self._duplicates),
            }

    @property
    def all_failed(self) -> bool:
        """True when merges were attempted and none of them worked."""
        with self._lock:
            merge_failures = sum(1 for f in self._failures if f[3])
            return merge_failures > 0 and not self._results

    def render(self) -> List[str]:
        """Human readable summary, in scan order."""
        lines = []
        if self.cancelled:
            lines.append("run interrupted, report covers finished titles only")
        successes = self.successes
        lines.append(f"merged {len(successes)} file(s):")
        lines.extend(f"  {path}" for path in successes)
        duplicates = self.duplicates
        if duplicates:
            lines.append(f"already merged {len(duplicates)} file(s):")
            lines.extend(f"  {path}" for path in duplicates)
        skipped = self.skipped
        if skipped:
            lines.append(f"skipped {len(skipped)} existing file(s):")
            lines.extend(f"  {path}" for path in skipped)
        failures = self.failures
        if failures:
            lines.append(f"failed {len(failures)} title(s):")
            for name, reason in failures:
                lines.append(f"  {name}: {reason}")
        if self.all_failed:
            lines.append("EVERY MERGE FAILED - check the backends, disk space and output permissions")
        if self.elapsed is not None:
            lines.append(f"elapsed {self.elapsed:.1f}s")
        return lines


SubtitleAttacher = Callable[[Path, Path], Optional[Path]]


class BatchCoordinator:
    """Drives cache root -> BatchReport."""

    def __init__(self, opt: Dict, muxer: Muxer, attacher: Optional[SubtitleAttacher] = None):
        self.opt = opt
        self.muxer = muxer
        self.attacher = attacher
        self.root = Path(opt['cachepath'])
        self.outdir = Path(opt['outdir'])
        self.roottmp = Path(opt['tmpdir'])
        self.tmpdir = self.roottmp / str(os.getpid())
        self.ext = f".{str(opt.get('ext', 'mp4')).lstrip('.')}"
        self.jobs = int(opt.get('jobs') or 0) or os.cpu_count() or 1
        self._cancelled = threading.Event()

    def validate(self):
        """Raise ConfigError for problems that make every merge pointless."""
        if not self.root.is_dir():
            raise ConfigError(f"cache root {self.root} is not a directory")
        if not any(backend.available() for backend in self.muxer.backends):
            raise ConfigError("no usable muxer found (install MP4Box or ffmpeg, or pass their paths)")

    def cancel(self):
        """Stop scheduling and kill running merges."""
        self._cancelled.set()
        self.muxer.cancel()

    def run(self) -> BatchReport:
        report = BatchReport()
        try:
            self.validate()
            try:
                self.outdir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise ConfigError(f"cannot create output directory {self.outdir}: {e}")
            self._schedule(report)
        except KeyboardInterrupt:
            self._interrupted(report)

        if self._cancelled.is_set():
            report.cancelled = True
        if self.opt.get('cleanup', True):
            shutil.rmtree(self.tmpdir, ignore_errors=True)
        return report.finish()

    def _schedule(self, report: BatchReport) -> None:
        ledger = MergeLedger(self.outdir / LEDGER_NAME)
        classifier = DuplicateClassifier(ledger)
        reserved: Set[Path] = set()
        futures: List[Tuple[Future, MergeTask]] = []

        logger.info(f"scanning {self.root}")
        entries = scan_cache(self.root, exclude=[self.outdir, self.roottmp],
                             on_skip=report.add_scan_skip)

        with ThreadPoolExecutor(max_workers=self.jobs) as pool:
            try:
                for entry in entries:
                    if self._cancelled.is_set():
                        break
                    task = self._plan(entry, classifier, reserved, report)
                    if task is not None:
                        reserved.add(task.output)
                        futures.append((pool.submit(self._merge, task, ledger, report), task))
                for future, task in futures:
                    self._collect(future, task, report)
            except KeyboardInterrupt:
                # kill running merges before the pool waits on them
                self._interrupted(report)
                for future, _ in futures:
                    future.cancel()

    def _interrupted(self, report: BatchReport) -> None:
        logger.warning("interrupted, stopping running merges")
        report.cancelled = True
        self.cancel()

    def _plan(self, entry: CacheEntry, classifier: DuplicateClassifier,
              reserved: Set[Path], report: BatchReport) -> Optional[MergeTask]:
        subtitle = entry.subtitle if self.attacher is not None else None
        candidate = self.outdir / f"{entry.title}{self.ext}"
        try:
            task = resolve_output(entry, candidate, classifier,
                                  skip=bool(self.opt.get('skip')),
                                  overlay=bool(self.opt.get('overlay')),
                                  subtitle=subtitle, reserved=reserved)
        except OSError as e:
            logger.error(f"[{entry.title}] cannot inspect output: {e}")
            report.add_failure(entry.index, entry.title, str(e))
            return None

        if task.decision in (DUPLICATE, SKIP):
            # a kept file is still claimed for the rest of the run
            reserved.add(task.output)
        if task.decision == DUPLICATE:
            logger.info(f"[{entry.title}] already merged as {task.output}")
            report.add_duplicate(entry.index, task.output)
            return None
        if task.decision == SKIP:
            logger.info(f"[{entry.title}] skipping, {task.output} exists")
            report.add_skipped(entry.index, task.output)
            return None
        if task.decision == RENAME:
            logger.info(f"[{entry.title}] {candidate.name} exists, writing {task.output.name}")
        elif task.decision == OVERWRITE:
            logger.info(f"[{entry.title}] overwriting {task.output}")
        return task

    def _subtitle(self, task: MergeTask, workdir: Path) -> Optional[Path]:
        if task.subtitle is None or self.attacher is None:
            return None
        try:
            return self.attacher(task.subtitle, workdir)
        except Exception as e:
            logger.warning(f"[{task.entry.title}] subtitle dropped, {task.subtitle}: {e}")
            return None

    def _merge(self, task: MergeTask, ledger: MergeLedger, report: BatchReport):
        entry = task.entry
        if self._cancelled.is_set():
            return
        workdir = self.tmpdir / f"{entry.index:05d}"
        logger.info(f"[{entry.title}] merging into {task.output}")
        try:
            video = stage_segment(entry.video, workdir / 'video.mp4')
            audio = stage_segment(entry.audio, workdir / 'audio.m4a')
            subtitle = self._subtitle(task, workdir)
            result = self.muxer.mux(video, audio, subtitle, task.output)
        except MuxError as e:
            reason = str(e)
            if e.diagnostics:
                reason = f"{reason}\n    " + e.diagnostics.replace('\n', '\n    ')
            logger.error(f"[{entry.title}] merge failed: {reason}")
            report.add_failure(entry.index, entry.title, reason)
        except OSError as e:
            logger.error(f"[{entry.title}] merge failed: {e}")
            report.add_failure(entry.index, entry.title, str(e))
        else:
            logger.info(f"[{entry.title}] done with {result.backend} in {result.elapsed:.1f}s")
            report.add_success(entry.index, task.decision, result)
            try:
                ledger.record(task.key, result, file_digest(result.output))
            except OSError as e:
                logger.warning(f"[{entry.title}] could not update {ledger.path}: {e}")
        finally:
            if self.opt.get('cleanup', True):
                shutil.rmtree(workdir, ignore_errors=True)

    def _collect(self, future: Future, task: MergeTask, report: BatchReport):
        try:
            future.result()
        except Exception as e:
            logger.exception(f"[{task.entry.title}] unexpected error")
            report.add_failure(task.entry.index, task.entry.title, f"unexpected error: {e}")


# --------------------------------------------------------------------------
# configuration and CLI


DEFAULTS = {
    'cachepath': str(Path.home() / 'Videos' / 'bilibili'),
    'outdir': '',
    'tmpdir': str(Path(tempfile.gettempdir()) / 'm4smerge'),
    'mp4box': '',
    'ffmpeg': '',
    'ext': 'mp4',
    'skip': False,
    'overlay': False,
    'danmaku': False,
    'jobs': 0,
    'timeout': 600.0,
    'cleanup': True,
    'fontsize': 25,
    'playresx': 1920,
    'playresy': 1080,
    'duration': 8.0,
}


def setup_logging(loglevel: str):
    """Set up logging configuration."""
    level = getattr(logging, loglevel.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(message)s',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


def load_config(basedir: Path, inifile: Optional[Path] = None) -> Dict:
    """Defaults overlaid with the [m4smerge] section of the INI file."""
    opt = dict(DEFAULTS)
    inifile = Path(inifile) if inifile else basedir / "m4smerge.ini"
    if not inifile.exists():
        if inifile != basedir / "m4smerge.ini":
            raise ConfigError(f"config file {inifile} not found")
        return opt

    parser = configparser.ConfigParser(interpolation=None)
    try:
        parser.read(inifile, encoding='utf-8')
    except configparser.Error as e:
        raise ConfigError(f"cannot parse {inifile}: {e}")
    if not parser.has_section('m4smerge'):
        logger.debug(f"[ini] no [m4smerge] section in {inifile}")
        return opt

    section = parser['m4smerge']
    for key, raw in section.items():
        if key not in DEFAULTS:
            logger.debug(f"[ini] skipping unknown key [{key}]")
            continue
        default = DEFAULTS[key]
        try:
            if isinstance(default, bool):
                value = section.getboolean(key)
            elif isinstance(default, int):
                value = section.getint(key)
            elif isinstance(default, float):
                value = section.getfloat(key)
            else:
                value = raw.strip().strip('"\'').replace('$basedir', str(basedir))
        except ValueError as e:
            raise ConfigError(f"{inifile}: bad value for {key}: {e}")
        logger.debug(f"[ini] [{key}] = [{value}]")
        opt[key] = value
    return opt


def normalize_options(opt: Dict) -> Dict:
    """Resolve paths and check values that do not depend on the filesystem."""
    opt = dict(opt)
    opt['ext'] = str(opt['ext']).lower().lstrip('.')
    if opt['ext'] not in OUTPUT_EXTS:
        raise ConfigError(f"unsupported output extension {opt['ext']!r} (use {', '.join(OUTPUT_EXTS)})")
    if float(opt['timeout']) <= 0:
        raise ConfigError("timeout must be positive")
    opt['timeout'] = float(opt['timeout'])
    if int(opt['jobs']) < 0:
        raise ConfigError("jobs must not be negative")
    opt['cachepath'] = str(Path(opt['cachepath']).expanduser().resolve())
    if not opt['outdir']:
        opt['outdir'] = str(Path(opt['cachepath']) / 'output')
    opt['outdir'] = str(Path(opt['outdir']).expanduser().resolve())
    opt['tmpdir'] = str(Path(opt['tmpdir']).expanduser().resolve())
    return opt


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description='m4smerge - Rebuild playable videos from Bilibili .m4s cache segments'
    )
    parser.add_argument('-c', '--cachepath', help='Cache root directory')
    parser.add_argument('--outdir', help='Output directory (default: <cachepath>/output)')
    parser.add_argument('--tmpdir', help='Custom temporary/working folder')
    parser.add_argument('-s', '--skip', action='store_true', default=None,
                        help='Skip titles whose output file already exists')
    parser.add_argument('-o', '--overlay', action='store_true', default=None,
                        help='Overwrite existing output files (--skip wins)')
    parser.add_argument('-a', '--danmaku', action='store_true', default=None,
                        help='Attach danmaku as a subtitle track')
    parser.add_argument('--no-danmaku', dest='danmaku', action='store_false')
    parser.add_argument('-g', '--mp4box', help=f'Path to MP4Box, or "{SELECT}" to be asked')
    parser.add_argument('-f', '--ffmpeg', help=f'Path to ffmpeg, or "{SELECT}" to be asked')
    parser.add_argument('--ext', help='Output container: mp4, mkv or mov')
    parser.add_argument('-j', '--jobs', type=int, help='Parallel merges (default: CPU count)')
    parser.add_argument('--timeout', type=float, help='Seconds before a muxer is killed')
    parser.add_argument('--cleanup', action='store_true', default=None, help='Cleanup temporary files')
    parser.add_argument('--no-cleanup', dest='cleanup', action='store_false')
    parser.add_argument('--config', help='INI file (default: m4smerge.ini next to this script)')
    parser.add_argument('--loglevel', '--ll', default='INFO', help='Log level (DEBUG, INFO, WARN, ERROR)')

    args = parser.parse_args(argv)

    setup_logging(args.loglevel)
    logger.info("m4smerge")

    basedir = Path(__file__).parent.resolve()
    try:
        opt = load_config(basedir, args.config)
        for key, value in vars(args).items():
            if value is not None and key not in ['loglevel', 'config']:
                opt[key] = value
        opt = normalize_options(opt)

        logger.info("Options")
        for key in sorted(opt.keys()):
            logger.info(f"  {key}: {opt[key]}")

        muxer = Muxer(build_backends(opt, prompt_executable), timeout=opt['timeout'])
        attacher = DanmakuAttacher(opt) if opt['danmaku'] else None
        report = BatchCoordinator(opt, muxer, attacher).run()
    except ConfigError as e:
        logger.error(f"configuration error: {e}")
        return 2
    except KeyboardInterrupt:
        logger.warning("interrupted")
        return 130

    for line in report.render():
        logger.info(line)
    return 130 if report.cancelled else 0


if __name__ == '__main__':
    sys.exit(main())
