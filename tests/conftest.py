"""Shared fixtures for the m4smerge tests."""

import json
import stat
import sys
from pathlib import Path
from typing import Optional

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import m4smerge  # noqa: E402

WRITE_LAST_ARG = """#!/bin/sh
for arg; do out="$arg"; done
printf 'merged\\n' > "$out"
"""

FAIL = """#!/bin/sh
echo "moov atom not found" >&2
exit 3
"""

HANG = """#!/bin/sh
exec sleep 30
"""


def write_script(path: Path, body: str) -> Path:
    path.write_text(body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def make_title(parent: Path, name: str, video: bool = True, audio: bool = True,
               title: Optional[str] = None, layout: str = 'android',
               padded: bool = False, danmaku: bool = False) -> Path:
    """Build one cached title the way the clients lay it out on disk."""
    prefix = b'000000000' if padded else b''
    if layout == 'android':
        page = parent / name
        segdir = page / '80'
        segdir.mkdir(parents=True)
        (page / 'entry.json').write_text(json.dumps({'title': title or name}), encoding='utf-8')
        if video:
            (segdir / 'video.m4s').write_bytes(prefix + b'VIDEO-' + name.encode())
        if audio:
            (segdir / 'audio.m4s').write_bytes(prefix + b'AUDIO-' + name.encode())
        if danmaku:
            (page / 'danmaku.xml').write_text(
                '<i><d p="1.0,1,25,16777215,0,0,0,0">hi</d></i>', encoding='utf-8')
        return segdir
    segdir = parent / name
    segdir.mkdir(parents=True)
    if title is not None:
        (segdir / 'videoInfo.json').write_text(json.dumps({'title': title}), encoding='utf-8')
    if video:
        (segdir / '1234-1-30080.m4s').write_bytes(prefix + b'VIDEO-' + name.encode())
    if audio:
        (segdir / '1234-1-30280.m4s').write_bytes(prefix + b'AUDIO-' + name.encode())
    return segdir


@pytest.fixture
def cache(tmp_path):
    root = tmp_path / 'cache'
    root.mkdir()
    return root


@pytest.fixture
def tools(tmp_path):
    bindir = tmp_path / 'bin'
    bindir.mkdir()
    return {
        'ok': str(write_script(bindir / 'ok-muxer', WRITE_LAST_ARG)),
        'fail': str(write_script(bindir / 'fail-muxer', FAIL)),
        'hang': str(write_script(bindir / 'hang-muxer', HANG)),
        'missing': str(bindir / 'does-not-exist'),
    }


@pytest.fixture
def options(tmp_path, cache):
    opt = dict(m4smerge.DEFAULTS)
    opt.update({
        'cachepath': str(cache),
        'tmpdir': str(tmp_path / 'work'),
        'jobs': 2,
        'timeout': 10.0,
    })
    return m4smerge.normalize_options(opt)
