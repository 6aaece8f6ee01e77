"""
Device fingerprint collection.

Gathers ~20 environment signals into FingerprintComponents and hashes them
into one opaque identifier. The signals come from a FingerprintEnvironment:
a bridge to a browser, a static description, or the host Python process.

Probes for canvas, WebGL, audio, fonts and plugins never raise. Each one
yields a ProbeResult that folds into a fixed sentinel on failure, so a
privacy-hardened environment still produces a stable fingerprint.
"""

import asyncio
import hashlib
import json
import locale
import os
import platform
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Protocol, Sequence

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)

# =============================================================================
# Constants
# =============================================================================

NO_CANVAS = "no-canvas"
CANVAS_ERROR = "canvas-error"
NO_WEBGL = "no-webgl"
WEBGL_ERROR = "webgl-error"
WEBGL_AVAILABLE = "webgl-available"
NO_AUDIO = "no-audio"
AUDIO_ERROR = "audio-error"

MAX_PLUGINS = 10
AUDIO_SAMPLES = 30
AUDIO_DIGEST_LENGTH = 50

FONT_PROBE_TEXT = "mmmmmmmmmmlli"
BASE_FONTS = ("monospace", "sans-serif", "serif")
TEST_FONTS = (
    "Arial",
    "Courier New",
    "Georgia",
    "Times New Roman",
    "Verdana",
    "Comic Sans MS",
    "Impact",
    "Trebuchet MS",
    "Palatino",
    "Garamond",
    "Bookman",
    "Courier",
    "Helvetica",
    "Monaco",
    "Tahoma",
)


# =============================================================================
# Environment interface
# =============================================================================


class WebGLInfo(BaseModel):
    vendor: Optional[str] = None
    renderer: Optional[str] = None
    version: Optional[str] = None


class AudioContextHandle(Protocol):
    """An offline audio graph that renders samples once, then must be closed."""

    async def render(self) -> Sequence[float]: ...
    async def close(self) -> None: ...


class FingerprintEnvironment(Protocol):
    """
    Source of raw fingerprint signals.

    Methods return None when the capability is absent and may raise when it
    is present but broken; the collector handles both.
    """

    user_agent: str
    language: str
    languages: list[str]
    screen_width: int
    screen_height: int
    avail_width: int
    avail_height: int
    color_depth: int
    pixel_ratio: float
    timezone_offset: int  # Minutes behind UTC, browser sign convention
    timezone_name: str
    session_storage: bool
    local_storage: bool
    indexed_db: bool
    hardware_concurrency: int
    platform: str
    touch_support: bool

    def list_plugins(self) -> Optional[list[tuple[str, str]]]: ...
    def render_canvas(self) -> Optional[str]: ...
    def webgl_info(self) -> Optional[WebGLInfo]: ...
    def open_audio_context(self) -> Optional[AudioContextHandle]: ...
    def measure_text_width(self, font: str, text: str) -> Optional[float]: ...


# =============================================================================
# Probe results
# =============================================================================


class ProbeFailure(str, Enum):
    UNSUPPORTED = "unsupported"
    ERROR = "error"


class ProbeResult(BaseModel):
    """Outcome of one probe: a value, or why there is none."""

    value: Optional[str] = None
    failure: Optional[ProbeFailure] = None

    @classmethod
    def ok(cls, value: str) -> "ProbeResult":
        return cls(value=value)

    @classmethod
    def unsupported(cls) -> "ProbeResult":
        return cls(failure=ProbeFailure.UNSUPPORTED)

    @classmethod
    def error(cls) -> "ProbeResult":
        return cls(failure=ProbeFailure.ERROR)

    def or_sentinel(self, unsupported: str, error: str) -> str:
        if self.failure == ProbeFailure.UNSUPPORTED:
            return unsupported
        if self.failure == ProbeFailure.ERROR:
            return error
        return self.value or ""


def probe_canvas(env: FingerprintEnvironment) -> ProbeResult:
    try:
        data = env.render_canvas()
    except Exception as e:
        logger.debug("canvas_probe_failed", error=str(e))
        return ProbeResult.error()
    if data is None:
        return ProbeResult.unsupported()
    return ProbeResult.ok(data)


def probe_webgl(env: FingerprintEnvironment) -> ProbeResult:
    try:
        info = env.webgl_info()
    except Exception as e:
        logger.debug("webgl_probe_failed", error=str(e))
        return ProbeResult.error()
    if info is None:
        return ProbeResult.unsupported()
    if info.vendor and info.renderer:
        return ProbeResult.ok(f"{info.vendor}~{info.renderer}")
    return ProbeResult.ok(info.version or WEBGL_AVAILABLE)


async def probe_audio(env: FingerprintEnvironment, timeout: float) -> ProbeResult:
    """Render a short oscillator and digest the samples. Always closes the context."""
    try:
        context = env.open_audio_context()
    except Exception as e:
        logger.debug("audio_probe_failed", error=str(e))
        return ProbeResult.error()
    if context is None:
        return ProbeResult.unsupported()

    try:
        samples = await asyncio.wait_for(context.render(), timeout=timeout)
        digest = "".join(f"{abs(sample):.10f}" for sample in list(samples)[:AUDIO_SAMPLES])
        return ProbeResult.ok(digest[:AUDIO_DIGEST_LENGTH])
    except asyncio.TimeoutError:
        logger.debug("audio_probe_timed_out", timeout=timeout)
        return ProbeResult.error()
    except Exception as e:
        logger.debug("audio_probe_failed", error=str(e))
        return ProbeResult.error()
    finally:
        try:
            await context.close()
        except Exception as e:
            logger.debug("audio_context_close_failed", error=str(e))


def list_plugins(env: FingerprintEnvironment) -> list[str]:
    try:
        plugins = env.list_plugins()
    except Exception:
        return []
    if not plugins:
        return []
    return [f"{name}:{filename}" for name, filename in plugins][:MAX_PLUGINS]


def detect_fonts(env: FingerprintEnvironment) -> list[str]:
    """
    Detect installed fonts by text width.

    A test font is present when rendering with it (falling back to a base
    font) gives a different width than the base font alone.
    """
    try:
        base_widths = {}
        for base in BASE_FONTS:
            width = env.measure_text_width(f"72px {base}", FONT_PROBE_TEXT)
            if width is None:
                return []
            base_widths[base] = width

        detected = []
        for font in TEST_FONTS:
            for base in BASE_FONTS:
                width = env.measure_text_width(f'72px "{font}", {base}', FONT_PROBE_TEXT)
                if width != base_widths[base]:
                    detected.append(font)
                    break
        return detected
    except Exception as e:
        logger.debug("font_probe_failed", error=str(e))
        return []


# =============================================================================
# Components
# =============================================================================


class FingerprintComponents(BaseModel):
    """The full signal vector. Serialized with camelCase keys for hashing."""

    user_agent: str = Field(..., alias="userAgent")
    language: str
    languages: list[str]
    screen_resolution: str = Field(..., alias="screenResolution")
    available_screen_resolution: str = Field(..., alias="availableScreenResolution")
    color_depth: int = Field(..., alias="colorDepth")
    pixel_ratio: float = Field(..., alias="pixelRatio")
    timezone_offset: int = Field(..., alias="timezone")
    timezone_name: str = Field(..., alias="timezoneString")
    session_storage: bool = Field(..., alias="sessionStorage")
    local_storage: bool = Field(..., alias="localStorage")
    indexed_db: bool = Field(..., alias="indexedDB")
    cpu_cores: int = Field(..., alias="cpuCores")
    platform: str
    plugins: list[str]
    canvas: str
    webgl: str
    audio: str = Field(..., alias="audioContext")
    touch_support: bool = Field(..., alias="touchSupport")
    fonts: list[str]

    model_config = {"populate_by_name": True}


def hash_components(components: FingerprintComponents) -> str:
    """SHA-256 hex digest of the components' canonical JSON."""
    payload = json.dumps(
        components.model_dump(by_alias=True),
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class FingerprintCollector:
    """Collects fingerprints from an environment."""

    def __init__(self, environment: FingerprintEnvironment, audio_timeout: float = 1.0):
        self.environment = environment
        self.audio_timeout = audio_timeout

    async def collect(self) -> FingerprintComponents:
        env = self.environment
        canvas = probe_canvas(env).or_sentinel(NO_CANVAS, CANVAS_ERROR)
        webgl = probe_webgl(env).or_sentinel(NO_WEBGL, WEBGL_ERROR)
        audio = (await probe_audio(env, self.audio_timeout)).or_sentinel(NO_AUDIO, AUDIO_ERROR)

        return FingerprintComponents(
            user_agent=env.user_agent,
            language=env.language,
            languages=list(env.languages) or [env.language],
            screen_resolution=f"{env.screen_width}x{env.screen_height}",
            available_screen_resolution=f"{env.avail_width}x{env.avail_height}",
            color_depth=env.color_depth,
            pixel_ratio=env.pixel_ratio,
            timezone_offset=env.timezone_offset,
            timezone_name=env.timezone_name,
            session_storage=env.session_storage,
            local_storage=env.local_storage,
            indexed_db=env.indexed_db,
            cpu_cores=env.hardware_concurrency or 0,
            platform=env.platform,
            plugins=list_plugins(env),
            canvas=canvas,
            webgl=webgl,
            audio=audio,
            touch_support=env.touch_support,
            fonts=detect_fonts(env),
        )

    async def enhanced_fingerprint(self) -> str:
        """Hash of every signal. This is what the server sees in X-Fingerprint."""
        return hash_components(await self.collect())

    def simple_fingerprint(self) -> str:
        """
        Cheap six-signal fingerprint for local duplicate hints.

        Synchronous and skips the slow probes (audio, fonts).
        """
        env = self.environment
        signals = [
            env.user_agent,
            env.language,
            f"{env.screen_width}x{env.screen_height}",
            str(env.timezone_offset),
            probe_canvas(env).or_sentinel(NO_CANVAS, CANVAS_ERROR),
            str(env.hardware_concurrency or "unknown"),
        ]
        return hashlib.blake2b("|".join(signals).encode("utf-8"), digest_size=8).hexdigest()


# =============================================================================
# Environments
# =============================================================================


@dataclass
class StaticEnvironment:
    """
    Environment described by plain values, e.g. signals reported by a browser.

    ``canvas_data``, ``webgl`` and ``audio_samples`` set to None mean the
    capability is missing. Font widths are simulated: installed fonts render
    wider than the base fonts.
    """

    user_agent: str = "Mozilla/5.0"
    language: str = "en-US"
    languages: list[str] = field(default_factory=lambda: ["en-US", "en"])
    screen_width: int = 1920
    screen_height: int = 1080
    avail_width: int = 1920
    avail_height: int = 1040
    color_depth: int = 24
    pixel_ratio: float = 1.0
    timezone_offset: int = 0
    timezone_name: str = "UTC"
    session_storage: bool = True
    local_storage: bool = True
    indexed_db: bool = True
    hardware_concurrency: int = 8
    platform: str = "Linux x86_64"
    touch_support: bool = False
    plugins: Optional[list[tuple[str, str]]] = None
    canvas_data: Optional[str] = None
    webgl: Optional[WebGLInfo] = None
    audio_samples: Optional[list[float]] = None
    installed_fonts: frozenset[str] = frozenset()

    def list_plugins(self) -> Optional[list[tuple[str, str]]]:
        return self.plugins

    def render_canvas(self) -> Optional[str]:
        return self.canvas_data

    def webgl_info(self) -> Optional[WebGLInfo]:
        return self.webgl

    def open_audio_context(self) -> Optional[AudioContextHandle]:
        if self.audio_samples is None:
            return None
        return _StaticAudioContext(self.audio_samples)

    def measure_text_width(self, font: str, text: str) -> Optional[float]:
        width = 40.0 * len(text)
        for name in self.installed_fonts:
            if f'"{name}"' in font:
                return width + 7.0
        return width


class _StaticAudioContext:
    def __init__(self, samples: list[float]):
        self._samples = samples
        self.closed = False

    async def render(self) -> Sequence[float]:
        return self._samples

    async def close(self) -> None:
        self.closed = True


class SystemEnvironment(StaticEnvironment):
    """
    Signals from the host Python process.

    There is no screen, canvas, WebGL or audio here; those probes fall back
    to their sentinels.
    """

    def __init__(self, user_agent: Optional[str] = None):
        language = _system_language()
        offset_seconds = time.localtime().tm_gmtoff
        super().__init__(
            user_agent=user_agent or f"PollGuardClient ({platform.system()} {platform.release()})",
            language=language,
            languages=[language],
            screen_width=0,
            screen_height=0,
            avail_width=0,
            avail_height=0,
            color_depth=0,
            pixel_ratio=1.0,
            timezone_offset=-offset_seconds // 60,
            timezone_name=datetime.now().astimezone().tzname() or "UTC",
            session_storage=True,
            local_storage=True,
            indexed_db=False,
            hardware_concurrency=os.cpu_count() or 0,
            platform=f"{platform.system()} {platform.machine()}",
            touch_support=False,
        )

    def measure_text_width(self, font: str, text: str) -> Optional[float]:
        return None


def _system_language() -> str:
    lang, _ = locale.getlocale()
    if not lang:
        return "en-US"
    return lang.replace("_", "-")
