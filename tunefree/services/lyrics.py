import bisect
import logging
import re
from typing import List, Optional

from tunefree.schemas.models import ParsedLyric

logger = logging.getLogger(__name__)

TIME_TAG = re.compile(r'\[(\d{2}):(\d{2})\.(\d{2,3})\]')

# Lines closer than this to the previous line are its translation
TRANSLATION_WINDOW = 0.2


def _tag_seconds(match: re.Match) -> float:
    minutes, seconds, fraction = match.groups()
    millis = int(fraction) * 10 if len(fraction) == 2 else int(fraction)
    return int(minutes) * 60 + int(seconds) + millis / 1000


def parse_lrc(lrc: Optional[str]) -> List[ParsedLyric]:
    """
    Parse LRC text into time-sorted lines.

    Only the first ``[mm:ss.xx]`` / ``[mm:ss.xxx]`` tag of a line counts.
    Metadata tags and empty lines are dropped. When two lines start within
    ``TRANSLATION_WINDOW`` seconds the later one becomes the translation of
    the earlier one; further lines in the window are ignored.
    """
    if not lrc:
        return []

    raw = []
    for line in lrc.splitlines():
        match = TIME_TAG.search(line)
        if not match:
            continue
        text = TIME_TAG.sub('', line, count=1).strip()
        if text:
            raw.append((_tag_seconds(match), text))

    raw.sort(key=lambda item: item[0])

    result: List[ParsedLyric] = []
    for time, text in raw:
        last = result[-1] if result else None
        if last is not None and abs(last.time - time) < TRANSLATION_WINDOW:
            if not last.translation:
                last.translation = text
        else:
            result.append(ParsedLyric(time=time, text=text))
    return result


def merge_translation(lrc: Optional[str], tlyric: Optional[str]) -> str:
    """Append a translation block so ``parse_lrc`` pairs it by timestamp."""
    lrc = (lrc or '').strip()
    tlyric = (tlyric or '').strip()
    if not tlyric:
        return lrc
    if not lrc:
        return tlyric
    return f"{lrc}\n{tlyric}"


def format_tag(seconds: float) -> str:
    """Seconds to an ``[mm:ss.xx]`` tag."""
    centis = int(round(max(seconds, 0.0) * 100))
    minutes, centis = divmod(centis, 6000)
    return f"[{minutes:02d}:{centis // 100:02d}.{centis % 100:02d}]"


def active_index(lines: List[ParsedLyric], position: float) -> int:
    """Index of the line playing at ``position`` seconds, -1 before the first line."""
    times = [line.time for line in lines]
    return bisect.bisect_right(times, position) - 1
