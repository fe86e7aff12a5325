#!/usr/bin/env python3
import argparse
import hashlib
import json
import logging
import os
import re
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

import requests
from requests.exceptions import RequestException


def default_config_path() -> str:
    return os.path.join(os.path.expanduser("~"), ".config", "signage", "signage.json")


def default_data_dir() -> str:
    return os.path.join(os.path.expanduser("~"), ".local", "share", "signage")


DEFAULT_WHITELIST = ["player.vimeo.com"]

DEFAULT_CONFIG = {
    "url": "",
    "id": "",
    "username": "",
    "password": "",
    "key": None,
    "data_dir": default_data_dir(),
    "poll_interval_sec": 30,
    "request_timeout_sec": 15,
    "download_timeout_sec": 60,
    "whitelist": list(DEFAULT_WHITELIST),
    "mpv_path": "mpv",
    "volume": 100,
    "fullscreen": True,
    "image_display_duration_sec": 10,
    "player_stop_timeout_sec": 5,
    "ready_timeout_sec": 600,
    "ready_backoff_max_sec": 60,
    "ready_server_error_backoff_sec": 120,
    "log_file": "",
    "log_max_bytes": 5_000_000,
    "log_backup_count": 3,
    "status_file": "",
}

REQUIRED_CONFIG_KEYS = ("url", "id", "username", "password")
AUTH_REJECTED_STATUSES = {401, 403}
DOWNLOAD_CHUNK_SIZE = 1024 * 256
TICK_SLICE_SEC = 0.2


class SignageError(Exception):
    category = "error"


class TransientNetworkError(SignageError):
    category = "transient-network"


class MalformedResponse(TransientNetworkError):
    category = "malformed-response"


class AuthenticationRejected(SignageError):
    category = "authentication-rejected"


class DownloadError(SignageError):
    category = "download-failed"


class StorageError(SignageError):
    category = "storage"


class PlayerSpawnError(SignageError):
    category = "player-spawn"


@dataclass
class Credentials:
    base_url: str
    device_id: str
    username: str
    password: str
    key: Optional[str] = None


@dataclass(frozen=True)
class VideoAsset:
    id: str
    url: str


@dataclass(frozen=True, order=True)
class Marker:
    instant: datetime
    nanos: int = 0
    raw: str = field(default="", compare=False)


@dataclass
class Catalogue:
    videos: List[VideoAsset] = field(default_factory=list)
    last_update: Optional[Marker] = None
    downloaded: FrozenSet[str] = field(default_factory=frozenset)


# Config


def load_config(path: str) -> Dict:
    abs_path = os.path.abspath(path)
    if not os.path.exists(abs_path):
        raise FileNotFoundError(f"Config not found: {path}")
    with open(abs_path, "r", encoding="utf-8") as fh:
        data = json.load(fh)
    if not isinstance(data, dict):
        raise ValueError(f"Config must be a JSON object: {path}")
    cfg = dict(DEFAULT_CONFIG)
    cfg.update(data)
    config_dir = os.path.dirname(abs_path)
    for key in ("data_dir", "log_file", "status_file"):
        value = cfg.get(key)
        if isinstance(value, str) and value:
            cfg[key] = resolve_path_from_base(config_dir, os.path.expanduser(value))
    whitelist = cfg.get("whitelist")
    if not isinstance(whitelist, list):
        cfg["whitelist"] = list(DEFAULT_WHITELIST)
    else:
        cfg["whitelist"] = [origin for origin in whitelist if isinstance(origin, str) and origin]
        if len(cfg["whitelist"]) != len(whitelist):
            logging.warning("Ignoring non-string or empty whitelist entries in %s", path)
    return cfg


def missing_config_keys(cfg: Dict) -> List[str]:
    return [key for key in REQUIRED_CONFIG_KEYS if not cfg.get(key)]


def resolve_path_from_base(base_dir: str, value: str) -> str:
    if not value:
        return value
    if os.path.isabs(value):
        return os.path.normpath(value)
    return os.path.normpath(os.path.join(base_dir, value))


def write_config(path: str, cfg: Dict) -> None:
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as fh:
        json.dump(cfg, fh, indent=2, ensure_ascii=False)
    os.replace(tmp_path, path)


def store_api_key(path: str, key: str) -> None:
    # Only the key is rewritten; defaults merged by load_config stay out of the file.
    raw = load_json_file(path)
    if not isinstance(raw, dict):
        raw = {}
    raw["key"] = key
    write_config(path, raw)


def credentials_from_config(cfg: Dict) -> Credentials:
    key = cfg.get("key")
    return Credentials(
        base_url=str(cfg.get("url") or "").rstrip("/"),
        device_id=str(cfg.get("id") or ""),
        username=str(cfg.get("username") or ""),
        password=str(cfg.get("password") or ""),
        key=key if isinstance(key, str) and key else None,
    )


def data_dir(cfg: Dict) -> str:
    return cfg.get("data_dir") or default_data_dir()


def catalogue_path(cfg: Dict) -> str:
    return os.path.join(data_dir(cfg), "data.json")


def playlist_path(cfg: Dict) -> str:
    return os.path.join(data_dir(cfg), "playlist.txt")


def setup_logging(cfg: Dict) -> None:
    level = logging.INFO
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    log_file = cfg.get("log_file")
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                log_file,
                maxBytes=int(cfg.get("log_max_bytes") or 0),
                backupCount=int(cfg.get("log_backup_count") or 0),
            )
        )
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(message)s",
        handlers=handlers,
        force=True,
    )


def iso_now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def load_json_file(path: str) -> Optional[object]:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as exc:
        logging.warning("Failed to read state file %s: %s", path, exc)
        return None


def write_json_file(path: str, data: object, ensure_ascii: bool = True) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as fh:
        json.dump(data, fh, indent=2, ensure_ascii=ensure_ascii)
    os.replace(tmp_path, path)


# Markers

_FRACTION_RE = re.compile(r"\.(\d+)")


def parse_marker(value: object) -> Optional[Marker]:
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise MalformedResponse(f"Invalid update marker: {value!r}")
    raw = value.strip()
    text = raw
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    # The fraction is kept as nanoseconds beside a whole-second datetime.
    nanos = 0
    match = _FRACTION_RE.search(text)
    if match:
        digits = match.group(1)
        if len(digits) > 9:
            raise MalformedResponse(f"Invalid update marker: {value!r}")
        nanos = int(digits.ljust(9, "0"))
        text = text[: match.start()] + text[match.end():]
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise MalformedResponse(f"Invalid update marker: {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return Marker(instant=parsed.astimezone(timezone.utc), nanos=nanos, raw=raw)


def format_marker(marker: Optional[Marker]) -> Optional[str]:
    if marker is None:
        return None
    if marker.raw:
        return marker.raw
    text = marker.instant.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")
    if marker.nanos:
        text += "." + f"{marker.nanos:09d}".rstrip("0")
    return f"{text}Z"


def should_reconcile(local: Optional[Marker], remote: Optional[Marker]) -> bool:
    if remote is None:
        return False
    return local is None or remote > local


# Control-plane client


def api_get(
    creds: Credentials,
    path: str,
    timeout: float,
    auth: Optional[Tuple[str, str]] = None,
    with_key: bool = True,
) -> object:
    headers: Dict[str, str] = {}
    if with_key:
        if not creds.key:
            raise AuthenticationRejected(f"No API key available for {path}")
        headers["APIKEY"] = creds.key
    url = f"{creds.base_url}/{path}"
    try:
        resp = requests.get(url, headers=headers, auth=auth, timeout=timeout)
    except RequestException as exc:
        raise TransientNetworkError(f"GET {path} failed: {exc}") from exc
    if resp.status_code in AUTH_REJECTED_STATUSES:
        raise AuthenticationRejected(f"GET {path} rejected with HTTP {resp.status_code}")
    if resp.status_code < 200 or resp.status_code >= 300:
        raise TransientNetworkError(f"GET {path} returned HTTP {resp.status_code}")
    try:
        return resp.json()
    except ValueError as exc:
        raise MalformedResponse(f"GET {path} returned invalid JSON: {exc}") from exc


def issue_key(creds: Credentials, timeout: float) -> str:
    payload = api_get(
        creds,
        f"get-new-key/{creds.device_id}",
        timeout,
        auth=(creds.username, creds.password),
        with_key=False,
    )
    key = payload.get("key") if isinstance(payload, dict) else None
    if not isinstance(key, str) or not key:
        raise MalformedResponse("get-new-key response has no key")
    return key


class CredentialManager:
    def __init__(
        self,
        creds: Credentials,
        persist: Callable[[Credentials], None],
        timeout: float,
    ) -> None:
        self.creds = creds
        self._persist = persist
        self._timeout = timeout

    def ensure_key(self) -> str:
        if self.creds.key:
            return self.creds.key
        logging.info("No API key for device %s; requesting one", self.creds.device_id)
        return self.refresh_key()

    def refresh_key(self) -> str:
        key = issue_key(self.creds, self._timeout)
        self.creds.key = key
        logging.info("API key issued for device %s", self.creds.device_id)
        try:
            self._persist(self.creds)
        except OSError as exc:
            logging.warning("Failed to persist API key: %s", exc)
        return key

    def call(self, step: Callable, *args):
        """Run ``step(creds, *args)``, refreshing the key and retrying once on rejection."""
        self.ensure_key()
        try:
            return step(self.creds, *args)
        except AuthenticationRejected as exc:
            logging.warning("%s; refreshing API key and retrying once", exc)
            self.refresh_key()
            return step(self.creds, *args)


def check_remote_marker(creds: Credentials, timeout: float) -> Optional[Marker]:
    payload = api_get(creds, f"sync/{creds.device_id}", timeout)
    if not isinstance(payload, dict):
        raise MalformedResponse("sync response is not an object")
    return parse_marker(payload.get("updated"))


def fetch_catalogue(creds: Credentials, timeout: float) -> List[VideoAsset]:
    payload = api_get(creds, f"recieve-videos/{creds.device_id}", timeout)
    if not isinstance(payload, list):
        raise MalformedResponse("recieve-videos response is not a list")
    videos: List[VideoAsset] = []
    for entry in payload:
        asset = asset_from_payload(entry)
        if asset is None:
            logging.warning("Skipping malformed video entry: %r", entry)
            continue
        videos.append(asset)
    return videos


def asset_from_payload(entry: object) -> Optional[VideoAsset]:
    if not isinstance(entry, dict):
        return None
    # Older control-plane revisions used title/asset_url.
    identifier = entry.get("id")
    if identifier in (None, ""):
        identifier = entry.get("title")
    url = entry.get("url") or entry.get("asset_url")
    if identifier in (None, "") or not isinstance(url, str) or not url:
        return None
    return VideoAsset(id=str(identifier), url=url)


def probe_health(cfg: Dict) -> Optional[int]:
    url = f"{str(cfg.get('url') or '').rstrip('/')}/health"
    try:
        resp = requests.get(url, timeout=cfg["request_timeout_sec"])
    except RequestException as exc:
        logging.info("Control-plane not reachable yet: %s", exc)
        return None
    return resp.status_code


# Media


_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]")


def in_whitelist(asset: VideoAsset, whitelist: List[str]) -> bool:
    return any(origin and origin in asset.url for origin in whitelist)


def sha1_hex(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8"), usedforsecurity=False).hexdigest()


def media_filename(asset: VideoAsset) -> str:
    name = _UNSAFE_NAME_RE.sub("_", asset.id).lstrip(".")
    if name != asset.id:
        # Rewritten ids get a hash suffix so distinct ids never share a file.
        name = f"{name or '_'}-{sha1_hex(asset.id)[:10]}"
    return f"{name}.mp4"


def media_path(cfg: Dict, asset: VideoAsset) -> str:
    return os.path.join(data_dir(cfg), media_filename(asset))


def download_asset(
    asset: VideoAsset,
    dest: str,
    timeout: float,
    cancel_event: Optional[threading.Event] = None,
) -> str:
    tmp_path = f"{dest}.tmp"
    try:
        resp = requests.get(asset.url, stream=True, timeout=timeout)
        try:
            if resp.status_code < 200 or resp.status_code >= 300:
                raise DownloadError(f"HTTP {resp.status_code}")
            expected_size = None
            content_length = resp.headers.get("Content-Length")
            if content_length and content_length.isdigit():
                expected_size = int(content_length)
            bytes_written = 0
            with open(tmp_path, "wb") as fh:
                for chunk in resp.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    if cancel_event is not None and cancel_event.is_set():
                        raise DownloadError("cancelled")
                    if chunk:
                        fh.write(chunk)
                        bytes_written += len(chunk)
            if expected_size is not None and bytes_written < expected_size:
                raise DownloadError(f"Incomplete download ({bytes_written}/{expected_size} bytes)")
            os.replace(tmp_path, dest)
        finally:
            resp.close()
    except (RequestException, OSError, DownloadError) as exc:
        try:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
        except OSError as cleanup_exc:
            logging.warning("Failed to cleanup temp file for %s: %s", asset.id, cleanup_exc)
        if isinstance(exc, DownloadError):
            raise
        raise DownloadError(str(exc)) from exc
    return dest


def download_catalogue(
    cfg: Dict,
    videos: List[VideoAsset],
    cancel_event: Optional[threading.Event] = None,
) -> Dict[str, str]:
    try:
        os.makedirs(data_dir(cfg), exist_ok=True)
    except OSError as exc:
        raise StorageError(f"Failed to create media directory: {exc}") from exc
    whitelist = cfg.get("whitelist") or []
    downloaded: Dict[str, str] = {}
    for asset in videos:
        if cancel_event is not None and cancel_event.is_set():
            break
        if not in_whitelist(asset, whitelist):
            logging.debug("Skipping untrusted video %s (%s)", asset.id, asset.url)
            continue
        dest = media_path(cfg, asset)
        logging.info("Downloading %s from %s", asset.id, asset.url)
        try:
            downloaded[asset.id] = download_asset(
                asset, dest, cfg["download_timeout_sec"], cancel_event=cancel_event
            )
        except DownloadError as exc:
            logging.warning(
                "Failed to download %s [%s]: %s; excluded from playlist", asset.id, exc.category, exc
            )
    return downloaded


# Catalogue and playlist


def catalogue_to_payload(catalogue: Catalogue) -> Dict:
    return {
        "videos": [
            {"id": video.id, "url": video.url, "downloaded": video.id in catalogue.downloaded}
            for video in catalogue.videos
        ],
        "last_update": format_marker(catalogue.last_update),
    }


def catalogue_from_payload(data: object) -> Catalogue:
    if not isinstance(data, dict):
        return Catalogue()
    videos: List[VideoAsset] = []
    downloaded = set()
    raw_videos = data.get("videos")
    if isinstance(raw_videos, list):
        for entry in raw_videos:
            asset = asset_from_payload(entry)
            if asset is None:
                continue
            videos.append(asset)
            if entry.get("downloaded") is True:
                downloaded.add(asset.id)
    try:
        last_update = parse_marker(data.get("last_update"))
    except MalformedResponse:
        logging.warning("Ignoring invalid last_update in catalogue: %r", data.get("last_update"))
        last_update = None
    return Catalogue(videos=videos, last_update=last_update, downloaded=frozenset(downloaded))


def load_catalogue(cfg: Dict) -> Catalogue:
    return catalogue_from_payload(load_json_file(catalogue_path(cfg)))


def save_catalogue(cfg: Dict, catalogue: Catalogue) -> None:
    write_json_file(catalogue_path(cfg), catalogue_to_payload(catalogue), ensure_ascii=False)


def playlist_entries(cfg: Dict, catalogue: Catalogue) -> List[str]:
    whitelist = cfg.get("whitelist") or []
    entries: List[str] = []
    for asset in catalogue.videos:
        if asset.id not in catalogue.downloaded or not in_whitelist(asset, whitelist):
            continue
        path = media_path(cfg, asset)
        if os.path.isfile(path):
            entries.append(path)
    return entries


def write_playlist(cfg: Dict, catalogue: Catalogue) -> List[str]:
    entries = playlist_entries(cfg, catalogue)
    path = playlist_path(cfg)
    tmp_path = f"{path}.tmp"
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(tmp_path, "w", encoding="utf-8") as fh:
            for entry in entries:
                fh.write(f"{entry}\n")
        os.replace(tmp_path, path)
    except OSError as exc:
        raise StorageError(f"Failed to write playlist {path}: {exc}") from exc
    return entries


def commit(cfg: Dict, catalogue: Catalogue) -> List[str]:
    previous = load_json_file(catalogue_path(cfg))
    try:
        save_catalogue(cfg, catalogue)
    except OSError as exc:
        raise StorageError(f"Failed to persist catalogue: {exc}") from exc
    try:
        entries = write_playlist(cfg, catalogue)
    except StorageError:
        try:
            if previous is None:
                os.remove(catalogue_path(cfg))
            else:
                write_json_file(catalogue_path(cfg), previous, ensure_ascii=False)
        except OSError as exc:
            logging.error("Failed to restore previous catalogue: %s", exc)
        raise
    logging.info(
        "Catalogue committed: %d videos, %d playable, last_update=%s",
        len(catalogue.videos),
        len(entries),
        format_marker(catalogue.last_update),
    )
    return entries


# Player


def build_player_args(cfg: Dict, playlist: str) -> List[str]:
    args = [
        cfg["mpv_path"],
        f"--playlist={playlist}",
        "--loop-playlist=inf",
        f"--volume={int(cfg.get('volume', 100))}",
        "--no-terminal",
        f"--image-display-duration={int(cfg.get('image_display_duration_sec') or 10)}",
        "--idle=yes",
        "--force-window=yes",
    ]
    if cfg.get("fullscreen", True):
        args.append("--fs")
    return args


class PlayerSupervisor:
    def __init__(self, cfg: Dict, playlist: str, popen: Callable = subprocess.Popen) -> None:
        self._cfg = cfg
        self._playlist = playlist
        self._popen = popen
        self._proc: Optional[subprocess.Popen] = None
        self._generation = 0

    @property
    def state(self) -> str:
        return "running" if self._proc is not None else "stopped"

    @property
    def handle(self) -> Optional[subprocess.Popen]:
        return self._proc

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def playlist(self) -> str:
        return self._playlist

    def update_config(self, cfg: Dict, playlist: Optional[str] = None) -> None:
        self._cfg = cfg
        if playlist is not None:
            self._playlist = playlist

    def is_running(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    def start(self) -> None:
        if self._proc is not None:
            return
        if not os.path.exists(self._playlist):
            try:
                os.makedirs(os.path.dirname(self._playlist), exist_ok=True)
                open(self._playlist, "a", encoding="utf-8").close()
            except OSError as exc:
                logging.warning("Failed to create empty playlist %s: %s", self._playlist, exc)
        args = build_player_args(self._cfg, self._playlist)
        popen_kwargs = {
            "stdout": subprocess.DEVNULL,
            "stderr": subprocess.DEVNULL,
        }
        if os.name == "nt":
            popen_kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            popen_kwargs["start_new_session"] = True
        try:
            self._proc = self._popen(args, **popen_kwargs)
        except (OSError, ValueError) as exc:
            self._proc = None
            raise PlayerSpawnError(f"Failed to start player {args[0]}: {exc}") from exc
        self._generation += 1
        logging.info("Player started (pid %s, generation %d)", self._proc.pid, self._generation)

    def poll_health(self) -> bool:
        if self._proc is None:
            return False
        code = self._proc.poll()
        if code is None:
            return False
        logging.warning("Player exited with code %s; restarting", code)
        self._proc = None
        self.start()
        return True

    def replace(self) -> None:
        logging.info("Replacing player")
        self._kill()
        self.start()

    def stop(self) -> None:
        if self._proc is None:
            return
        self._kill()
        logging.info("Player stopped")

    def _kill(self) -> None:
        proc = self._proc
        self._proc = None
        if proc is None or proc.poll() is not None:
            return
        timeout = float(self._cfg.get("player_stop_timeout_sec") or 5)
        try:
            if os.name != "nt" and proc.pid:
                os.killpg(proc.pid, signal.SIGTERM)
            else:
                proc.terminate()
            proc.wait(timeout=timeout)
        except ProcessLookupError:
            return
        except subprocess.TimeoutExpired:
            logging.warning("Player did not exit after %.1fs; killing", timeout)
            try:
                if os.name != "nt" and proc.pid:
                    os.killpg(proc.pid, signal.SIGKILL)
                else:
                    proc.kill()
                proc.wait(timeout=timeout)
            except (ProcessLookupError, subprocess.TimeoutExpired) as exc:
                logging.warning("Failed to kill player: %s", exc)


# Status


class StatusState:
    def __init__(self) -> None:
        self._data: Dict[str, Optional[object]] = {
            "started_at": iso_now(),
            "last_sync_ok": None,
            "last_sync_error": None,
            "consecutive_failures": 0,
            "last_update": None,
            "playlist_size": None,
            "player_running": None,
            "player_generation": 0,
        }
        self.start_time = time.time()

    def update(self, **kwargs: object) -> None:
        self._data.update(kwargs)

    def snapshot(self) -> Dict[str, Optional[object]]:
        return dict(self._data)


def write_status(cfg: Dict, status: StatusState) -> None:
    status_file = cfg.get("status_file")
    if not status_file:
        return
    snapshot = status.snapshot()
    snapshot["uptime_sec"] = int(time.time() - status.start_time)
    try:
        write_json_file(status_file, snapshot)
    except OSError as exc:
        logging.warning("Status write failed: %s", exc)


# Reconciliation loop


@dataclass
class AgentContext:
    cfg: Dict
    config_path: str
    credentials: CredentialManager
    catalogue: Catalogue
    supervisor: PlayerSupervisor
    status: StatusState = field(default_factory=StatusState)
    stop_event: threading.Event = field(default_factory=threading.Event)
    reload_event: threading.Event = field(default_factory=threading.Event)


def build_context(cfg: Dict, config_path: str, popen: Callable = subprocess.Popen) -> AgentContext:
    creds = credentials_from_config(cfg)

    def persist(current: Credentials) -> None:
        store_api_key(config_path, current.key or "")

    credentials = CredentialManager(creds, persist, cfg["request_timeout_sec"])
    catalogue = load_catalogue(cfg)
    logging.info(
        "Loaded catalogue: %d videos, last_update=%s",
        len(catalogue.videos),
        format_marker(catalogue.last_update),
    )
    supervisor = PlayerSupervisor(cfg, playlist_path(cfg), popen=popen)
    return AgentContext(
        cfg=cfg,
        config_path=config_path,
        credentials=credentials,
        catalogue=catalogue,
        supervisor=supervisor,
    )


def wait_interruptible(seconds: float, *events: threading.Event) -> bool:
    deadline = time.monotonic() + max(seconds, 0)
    while time.monotonic() < deadline:
        if any(event.is_set() for event in events):
            return True
        time.sleep(min(TICK_SLICE_SEC, max(deadline - time.monotonic(), 0)))
    return any(event.is_set() for event in events)


def wait_until_ready(cfg: Dict, stop_event: threading.Event) -> bool:
    max_backoff = float(cfg.get("ready_backoff_max_sec") or 60)
    server_error_backoff = float(cfg.get("ready_server_error_backoff_sec") or max_backoff)
    ready_timeout = float(cfg.get("ready_timeout_sec") or 0)
    started = time.monotonic()
    backoff = 2.0
    while not stop_event.is_set():
        code = probe_health(cfg)
        if code == 200:
            logging.info("Control-plane reachable")
            return True
        if code is not None and code >= 500:
            delay = server_error_backoff
            logging.warning("Control-plane health returned HTTP %s; backing off %.0fs", code, delay)
        else:
            delay = backoff
            backoff = min(backoff * 2, max_backoff)
            if code is not None:
                logging.info("Control-plane health returned HTTP %s; not ready", code)
        if ready_timeout > 0:
            remaining = ready_timeout - (time.monotonic() - started)
            if remaining <= 0:
                logging.warning("Control-plane not ready after %.0fs; continuing with local content", ready_timeout)
                return False
            delay = min(delay, remaining)
        if wait_interruptible(delay, stop_event):
            break
    return False


def reconcile(ctx: AgentContext) -> bool:
    timeout = ctx.cfg["request_timeout_sec"]
    remote = ctx.credentials.call(check_remote_marker, timeout)
    local = ctx.catalogue.last_update
    if not should_reconcile(local, remote):
        logging.debug("No update (local=%s remote=%s)", format_marker(local), format_marker(remote))
        return False
    logging.info("Playlist changed (local=%s remote=%s)", format_marker(local), format_marker(remote))
    videos = ctx.credentials.call(fetch_catalogue, timeout)
    downloaded = download_catalogue(ctx.cfg, videos, cancel_event=ctx.stop_event)
    if ctx.stop_event.is_set():
        logging.info("Shutdown requested; abandoning update")
        return False
    catalogue = Catalogue(videos=videos, last_update=remote, downloaded=frozenset(downloaded))
    entries = commit(ctx.cfg, catalogue)
    ctx.catalogue = catalogue
    ctx.status.update(last_update=format_marker(remote), playlist_size=len(entries))
    ctx.supervisor.replace()
    return True


def tick(ctx: AgentContext, check_health: bool = True) -> bool:
    updated = False
    try:
        updated = reconcile(ctx)
    except (AuthenticationRejected, TransientNetworkError, StorageError) as exc:
        failures = int(ctx.status.snapshot().get("consecutive_failures") or 0) + 1
        if isinstance(exc, StorageError):
            logging.error("Update not committed [%s]: %s", exc.category, exc)
        elif isinstance(exc, AuthenticationRejected):
            logging.error("Sync deferred to next tick [%s]: %s", exc.category, exc)
        else:
            logging.warning("Sync deferred to next tick [%s]: %s", exc.category, exc)
        ctx.status.update(last_sync_error=f"{iso_now()} {exc}", consecutive_failures=failures)
    else:
        ctx.status.update(last_sync_ok=iso_now(), last_sync_error=None, consecutive_failures=0)
    if check_health:
        ctx.supervisor.poll_health()
    ctx.status.update(
        player_running=ctx.supervisor.is_running(),
        player_generation=ctx.supervisor.generation,
    )
    write_status(ctx.cfg, ctx.status)
    return updated


def reload(ctx: AgentContext) -> None:
    logging.info("Reloading configuration and catalogue")
    try:
        cfg = load_config(ctx.config_path)
    except (OSError, ValueError) as exc:
        logging.error("Reload failed; keeping current configuration: %s", exc)
        return
    missing = missing_config_keys(cfg)
    if missing:
        logging.error("Reload failed; config missing %s", ", ".join(missing))
        return
    fresh = credentials_from_config(cfg)
    creds = ctx.credentials.creds
    creds.base_url = fresh.base_url
    creds.device_id = fresh.device_id
    creds.username = fresh.username
    creds.password = fresh.password
    if fresh.key:
        creds.key = fresh.key
    ctx.cfg = cfg
    ctx.supervisor.update_config(cfg)

    catalogue = load_catalogue(cfg)
    playlist = playlist_path(cfg)
    moved = playlist != ctx.supervisor.playlist
    if catalogue == ctx.catalogue and not moved:
        logging.info("Catalogue unchanged; player left running")
        return
    try:
        entries = write_playlist(cfg, catalogue)
    except StorageError as exc:
        logging.error("Reload could not rewrite playlist [%s]: %s", exc.category, exc)
        return
    if moved:
        logging.info("Playlist moved to %s", playlist)
        ctx.supervisor.update_config(cfg, playlist)
    ctx.catalogue = catalogue
    ctx.status.update(last_update=format_marker(catalogue.last_update), playlist_size=len(entries))
    ctx.supervisor.replace()


def startup(ctx: AgentContext) -> None:
    wait_until_ready(ctx.cfg, ctx.stop_event)
    if ctx.stop_event.is_set():
        return
    try:
        entries = write_playlist(ctx.cfg, ctx.catalogue)
        ctx.status.update(playlist_size=len(entries))
    except StorageError as exc:
        logging.error("Failed to regenerate playlist at startup [%s]: %s", exc.category, exc)
    tick(ctx, check_health=False)
    if ctx.supervisor.state == "stopped" and not ctx.stop_event.is_set():
        ctx.supervisor.start()


def run(ctx: AgentContext) -> int:
    try:
        startup(ctx)
        interval = float(ctx.cfg.get("poll_interval_sec") or 30)
        last_tick = time.monotonic()
        while not ctx.stop_event.is_set():
            remaining = interval - (time.monotonic() - last_tick)
            wait_interruptible(remaining, ctx.stop_event, ctx.reload_event)
            if ctx.stop_event.is_set():
                break
            if ctx.reload_event.is_set():
                ctx.reload_event.clear()
                reload(ctx)
                interval = float(ctx.cfg.get("poll_interval_sec") or 30)
                continue
            last_tick = time.monotonic()
            tick(ctx)
    finally:
        ctx.supervisor.stop()
    logging.info("Agent stopped")
    return 0


def install_signal_handlers(ctx: AgentContext) -> None:
    def _handle_stop(sig, _frame):
        logging.info("Signal %s received, stopping...", sig)
        if ctx.stop_event.is_set():
            ctx.supervisor.stop()
            os._exit(1)
        ctx.stop_event.set()

    def _handle_reload(sig, _frame):
        logging.info("Signal %s received, reloading...", sig)
        ctx.reload_event.set()

    signal.signal(signal.SIGINT, _handle_stop)
    signal.signal(signal.SIGTERM, _handle_stop)
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, _handle_reload)


def main() -> int:
    parser = argparse.ArgumentParser(description="Signage player agent")
    parser.add_argument("--config", default=default_config_path(), help="Path to signage.json")
    args = parser.parse_args()
    config_path = os.path.abspath(os.path.expanduser(args.config))

    try:
        cfg = load_config(config_path)
    except (OSError, ValueError) as exc:
        logging.error("Cannot load config: %s", exc)
        return 2
    setup_logging(cfg)

    missing = missing_config_keys(cfg)
    if missing:
        logging.error("Config %s is missing %s", config_path, ", ".join(missing))
        return 2

    ctx = build_context(cfg, config_path)
    install_signal_handlers(ctx)
    try:
        return run(ctx)
    except PlayerSpawnError as exc:
        logging.error("Cannot continue without a player [%s]: %s", exc.category, exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
