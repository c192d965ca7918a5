"""
Danmaku (bullet comment) XML to ASS subtitles.

Reads the comment stream the client caches next to each title and lays the
comments out on screen lanes: scrolling comments cross the screen right to
left, top and bottom comments stay pinned for a few seconds.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from lxml import etree as ET

logger = logging.getLogger(__name__)

SCROLL_MODES = (1, 2, 3, 6)
BOTTOM_MODE = 4
TOP_MODE = 5
PINNED_DURATION = 4.0
STYLE_NAME = 'Danmaku'

ASS_HEADER = """[Script Info]
ScriptType: v4.00+
PlayResX: {width}
PlayResY: {height}
WrapStyle: 2
ScaledBorderAndShadow: yes

[V4+ Styles]
Format: Name, Fontname, Fontsize, PrimaryColour, SecondaryColour, OutlineColour, BackColour, Bold, Italic, Underline, StrikeOut, ScaleX, ScaleY, Spacing, Angle, BorderStyle, Outline, Shadow, Alignment, MarginL, MarginR, MarginV, Encoding
Style: {style},{font},{fontsize},&H33FFFFFF,&H33FFFFFF,&H33000000,&H33000000,0,0,0,0,100,100,0,0,1,1,0,7,0,0,0,1

[Events]
Format: Layer, Start, End, Style, Name, MarginL, MarginR, MarginV, Effect, Text
"""


@dataclass(frozen=True)
class Comment:
    time: float
    mode: int
    size: int
    color: int
    text: str


def parse_danmaku(path: Path) -> List[Comment]:
    """Read <d p="time,mode,size,color,..."> elements, sorted by time."""
    parser = ET.XMLParser(recover=True, huge_tree=True)
    try:
        root = ET.parse(str(path), parser).getroot()
    except ET.XMLSyntaxError as e:
        logger.warning(f"unreadable danmaku {path}: {e}")
        return []
    if root is None:
        return []

    comments = []
    for element in root.iter('d'):
        text = (element.text or '').strip()
        fields = (element.get('p') or '').split(',')
        if not text or len(fields) < 4:
            continue
        try:
            comment = Comment(
                time=float(fields[0]),
                mode=int(fields[1]),
                size=int(fields[2]),
                color=int(fields[3]),
                text=text,
            )
        except ValueError:
            logger.debug(f"bad danmaku attributes {fields!r}")
            continue
        if comment.time >= 0:
            comments.append(comment)
    comments.sort(key=lambda c: c.time)
    return comments


def ass_time(seconds: float) -> str:
    """H:MM:SS.cc"""
    centis = int(round(seconds * 100))
    hours, centis = divmod(centis, 360000)
    minutes, centis = divmod(centis, 6000)
    secs, centis = divmod(centis, 100)
    return f"{hours}:{minutes:02d}:{secs:02d}.{centis:02d}"


def ass_color(rgb: int) -> str:
    """Decimal RGB to ASS &HBBGGRR&."""
    red, green, blue = (rgb >> 16) & 0xFF, (rgb >> 8) & 0xFF, rgb & 0xFF
    return f"&H{blue:02X}{green:02X}{red:02X}&"


def ass_escape(text: str) -> str:
    text = text.replace('\\', '\\\u200b').replace('{', '\\{').replace('}', '\\}')
    return '\\N'.join(text.splitlines())


class LaneAllocator:
    """Assigns comments to horizontal lanes, avoiding overlap where possible."""

    def __init__(self, lanes: int):
        self.free_at: List[float] = [0.0] * max(1, lanes)

    def take(self, start: float, busy_until: float) -> int:
        for lane, free_at in enumerate(self.free_at):
            if free_at <= start:
                self.free_at[lane] = busy_until
                return lane
        # every lane busy, reuse the one that frees first
        lane = min(range(len(self.free_at)), key=lambda i: self.free_at[i])
        self.free_at[lane] = busy_until
        return lane


def write_ass(comments: List[Comment], path: Path, width: int = 1920, height: int = 1080,
              fontsize: int = 25, duration: float = 8.0, font: str = 'sans-serif') -> int:
    """
    Write comments as an ASS file. Returns the number of dialogue lines.

    A scrolling comment occupies its lane until its tail has entered the
    screen; a pinned comment holds its lane for its whole display time.
    """
    line_height = fontsize + 2
    lanes = max(1, height // line_height)
    scroll = LaneAllocator(lanes)
    top = LaneAllocator(lanes)
    bottom = LaneAllocator(lanes)
    lines = []

    for comment in comments:
        size = max(1, int(comment.size * fontsize / 25))
        text = ass_escape(comment.text)
        overrides = [] if comment.size == 25 else [f"\\fs{size}"]
        if comment.color != 0xFFFFFF:
            overrides.append(f"\\c{ass_color(comment.color)}")

        if comment.mode in SCROLL_MODES:
            text_width = len(comment.text) * size
            end = comment.time + duration
            entered = comment.time + duration * text_width / (width + text_width)
            y = scroll.take(comment.time, entered) * line_height
            overrides.insert(0, f"\\move({width},{y},{-text_width},{y})")
        elif comment.mode == TOP_MODE:
            end = comment.time + PINNED_DURATION
            y = top.take(comment.time, end) * line_height
            overrides.insert(0, f"\\an8\\pos({width // 2},{y})")
        elif comment.mode == BOTTOM_MODE:
            end = comment.time + PINNED_DURATION
            y = height - bottom.take(comment.time, end) * line_height
            overrides.insert(0, f"\\an2\\pos({width // 2},{y})")
        else:
            continue

        lines.append(
            f"Dialogue: 2,{ass_time(comment.time)},{ass_time(end)},{STYLE_NAME},,0,0,0,,"
            f"{{{''.join(overrides)}}}{text}\n"
        )

    with open(path, 'w', encoding='utf-8-sig') as f:
        f.write(ASS_HEADER.format(width=width, height=height, style=STYLE_NAME,
                                  font=font, fontsize=fontsize))
        f.writelines(lines)
    return len(lines)


class DanmakuAttacher:
    """Builds the subtitle file the muxer attaches as a soft track."""

    def __init__(self, opt: Dict):
        self.width = int(opt.get('playresx') or 1920)
        self.height = int(opt.get('playresy') or 1080)
        self.fontsize = int(opt.get('fontsize') or 25)
        self.duration = float(opt.get('duration') or 8.0)

    def __call__(self, source: Path, workdir: Path) -> Optional[Path]:
        comments = parse_danmaku(source)
        if not comments:
            logger.info(f"no danmaku in {source}")
            return None
        workdir.mkdir(parents=True, exist_ok=True)
        target = workdir / 'danmaku.ass'
        count = write_ass(comments, target, self.width, self.height,
                          self.fontsize, self.duration)
        if not count:
            logger.info(f"no displayable danmaku in {source}")
            return None
        logger.debug(f"wrote {count} danmaku lines to {target}")
        return target
