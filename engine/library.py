import logging
import os
import re
import shutil
import time
from urllib.parse import quote, urlencode

import requests

from engine.config import config_get

_EPISODE_RE = re.compile(r"S(\d{1,2})E(\d{1,2})", re.IGNORECASE)
_EPISODE_SPLIT_RE = re.compile(r"S\d{1,2}E\d{1,2}", re.IGNORECASE)
_EPISODE_TITLE_RE = re.compile(r"S\d{1,2}E\d{1,2}[-:\s]*(.+)$", re.IGNORECASE)
_YEAR_RE = re.compile(r"\b(19|20)\d{2}\b")
_REFRESH_TIMEOUT = 10


def sanitize_label(value, fallback="Misc"):
    value = re.sub(r"[^A-Za-z0-9 _().-]", " ", (value or "").strip())
    value = re.sub(r"\s+", " ", value).strip()
    return value or fallback


def _file_name(base, extension):
    base = sanitize_label(base, "Media")
    extension = (extension or "").strip().lstrip(".")
    return f"{base}.{extension}" if extension else base


def _category_directory(category):
    normalized = (category or "").strip().lower() or "misc"
    if normalized == "movies":
        return "Movies"
    if normalized in {"tv", "tv shows", "tvshows"}:
        return "TV"
    return sanitize_label(category or "Misc")


def _episode_placement(title, match, extension):
    season = int(match.group(1)) if match else 1
    episode = int(match.group(2)) if match else 1
    season = max(1, min(99, season))
    episode = max(1, min(999, episode))

    show_name = _EPISODE_SPLIT_RE.split(title, maxsplit=1)[0].strip() or title
    episode_match = _EPISODE_TITLE_RE.search(title)
    episode_title = episode_match.group(1).strip() if episode_match else ""

    show = sanitize_label(show_name, "Series")
    season_dir = f"Season {season:02d}"
    parts = [show, f"S{season:02d}E{episode:02d}"]
    if episode_title:
        parts.append(sanitize_label(episode_title, ""))
    base = " - ".join(part for part in parts if part)
    return ["TV", show, season_dir], _file_name(base, extension)


def _movie_placement(title, extension):
    year_match = _YEAR_RE.search(title)
    base_title = title.strip()
    if year_match:
        year = year_match.group(0)
        base_title = re.sub(rf"\(?{year}\)?", "", base_title).strip()
        base_title = f"{base_title or 'Movie'} ({year})"
    base_title = base_title or "Movie"
    return ["Movies", sanitize_label(base_title, "Movies")], _file_name(base_title, extension)


def _generic_placement(category, source_path, extension):
    base_name = os.path.splitext(os.path.basename(source_path))[0] or os.path.basename(source_path)
    return [_category_directory(category)], _file_name(base_name, extension)


def infer_placement(title, category, source_path):
    """Returns (directories, filename) relative to the library root."""
    title = (title or "").strip()
    if not title:
        title = os.path.splitext(os.path.basename(source_path))[0] or os.path.basename(source_path)
    extension = os.path.splitext(source_path)[1].lstrip(".")
    category_lower = (category or "").lower()

    episode = _EPISODE_RE.search(title)
    if "tv" in category_lower or "series" in category_lower or episode:
        return _episode_placement(title, episode, extension)
    if "movie" in category_lower:
        return _movie_placement(title, extension)
    return _generic_placement(category or "", source_path, extension)


class LibraryPlacer:
    def __init__(self, library_root):
        self.library_root = library_root

    def move_download_to_library(self, job, source_path):
        if not source_path or not os.path.exists(source_path):
            raise FileNotFoundError(f"Downloaded file missing: {source_path}")
        if not self.library_root:
            raise ValueError("Library path is not configured.")

        directories, filename = infer_placement(job.title, job.category, source_path)
        target_dir = os.path.join(self.library_root, *directories)
        os.makedirs(target_dir, mode=0o775, exist_ok=True)

        target_path = os.path.join(target_dir, filename)
        if os.path.exists(target_path):
            base, extension = os.path.splitext(filename)
            target_path = os.path.join(target_dir, _file_name(f"{base}-{int(time.time())}", extension))

        shutil.move(source_path, target_path)
        try:
            os.chmod(target_path, 0o644)
        except OSError as exc:
            logging.warning("Unable to chmod %s: %s", target_path, exc)
        logging.info("Moved %s -> %s", source_path, target_path)
        return target_path


class JellyfinClient:
    def __init__(self, url="", api_key="", library_id="", timeout=_REFRESH_TIMEOUT):
        self.url = (url or "").rstrip("/")
        self.api_key = api_key or ""
        self.library_id = library_id or ""
        self.timeout = timeout

    @classmethod
    def from_config(cls, config):
        return cls(
            url=str(config_get(config, "jellyfin.url", "")),
            api_key=str(config_get(config, "jellyfin.api_key", "")),
            library_id=str(config_get(config, "jellyfin.library_id", "")),
        )

    def refresh_library(self):
        if not self.url or not self.api_key:
            logging.info("Skipping Jellyfin refresh due to missing configuration.")
            return False
        headers = {}
        if self.library_id:
            params = {
                "Recursive": "true",
                "ImageRefreshMode": "Default",
                "MetadataRefreshMode": "Default",
                "ReplaceAllImages": "false",
                "RegenerateTrickplay": "false",
                "ReplaceAllMetadata": "false",
            }
            endpoint = f"{self.url}/Items/{quote(self.library_id, safe='')}/Refresh?{urlencode(params)}"
            headers["X-Emby-Token"] = self.api_key
        else:
            endpoint = f"{self.url}/Library/Refresh?{urlencode({'api_key': self.api_key})}"
        try:
            response = requests.post(endpoint, headers=headers, timeout=self.timeout)
        except requests.RequestException as exc:
            logging.warning("Jellyfin refresh request failed: %s", exc)
            return False
        if not response.ok:
            logging.warning("Jellyfin refresh returned HTTP %s", response.status_code)
            return False
        return True
