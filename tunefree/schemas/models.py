from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field


class Platform(str, Enum):
    NETEASE = "netease"
    QQ = "qq"
    KUWO = "kuwo"


class AudioQuality(str, Enum):
    STANDARD = "128k"
    HIGH = "320k"
    LOSSLESS = "flac"
    HIRES = "flac24bit"


LOWEST_QUALITY = AudioQuality.STANDARD


class Song(BaseModel):
    """Canonical track. Identity is the (source, id) pair, never id alone."""
    id: Union[str, int]
    name: str = "Unknown Song"
    artist: str = "Unknown Artist"
    album: str = ""
    pic: str = ""
    url: Optional[str] = None
    lrc: Optional[str] = None
    source: str
    types: Optional[List[str]] = None
    is_valid_id: bool = Field(True, alias="isValidId", description="False for synthesized temp_ ids")

    model_config = ConfigDict(extra='allow', populate_by_name=True)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.source, str(self.id))

    @property
    def is_resolvable(self) -> bool:
        return self.is_valid_id and not str(self.id).startswith("temp_")


class TopList(BaseModel):
    id: Union[str, int, None] = None
    name: Optional[str] = None
    update_frequency: Optional[str] = Field(None, alias="updateFrequency")
    pic_url: str = Field("", alias="picUrl")
    cover_img_url: str = Field("", alias="coverImgUrl", description="Same value as picUrl")

    model_config = ConfigDict(extra='allow', populate_by_name=True)


class PlaylistDetail(BaseModel):
    name: str = "未知歌单"
    songs: List[Song] = []


class ParsedLyric(BaseModel):
    time: float = Field(..., description="Start time in seconds")
    text: str
    translation: Optional[str] = None


class MethodDescriptor(BaseModel):
    """Declarative request template served by the TuneHub method endpoint."""
    type: Literal["http"] = "http"
    method: str = "GET"
    url: str
    params: Optional[Dict[str, Any]] = None
    body: Any = None
    headers: Optional[Dict[str, Any]] = None
    transform: Optional[str] = None

    model_config = ConfigDict(extra='ignore')


class TuneHubResponse(BaseModel):
    code: int
    msg: str = ""
    data: Any = None


class PlaybackResult(BaseModel):
    """Outcome of one combined parse call: url, lyrics and cover together."""
    url: Optional[str] = None
    lrc: str = ""
    pic: str = ""
    quality: AudioQuality = AudioQuality.HIGH


class LyricsResult(BaseModel):
    lrc: str = ""
    lines: List[ParsedLyric] = []
