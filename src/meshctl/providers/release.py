"""Release metadata lookups and archive downloads for the agent binary."""
from __future__ import annotations

import logging
import platform
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import requests

from ..config import ReleaseConfig, RetryConfig
from ..errors import ArchitectureUnsupportedError, DownloadError, ReleaseLookupError

logger = logging.getLogger(__name__)

ARCH_ALIASES = {"amd64": "x86_64"}
CHUNK_SIZE = 1024 * 1024
USER_AGENT = "meshctl"


def detect_architecture() -> str:
    """Return the host CPU architecture as reported by ``uname -m``."""
    return platform.machine()


@dataclass(slots=True)
class ReleaseProvider:
    """Resolve the latest published tag and download its archive."""

    release: ReleaseConfig
    retry: RetryConfig = field(default_factory=RetryConfig)
    json_helper: str = "jq"
    session: requests.Session = field(default_factory=requests.Session)
    sleep: Callable[[float], None] = time.sleep

    # ------------------------------------------------------------------
    # Version resolution
    def resolve_latest_version(self) -> str:
        """Return the latest release tag, retrying on any failure.

        Transport errors, unparsable responses and an empty ``tag_name`` are
        treated alike. After the configured number of attempts the lookup is
        abandoned with :class:`ReleaseLookupError`.
        """
        attempts = self.retry.attempts
        last_problem = "no response"
        for attempt in range(1, attempts + 1):
            try:
                body = self._fetch_metadata()
            except requests.RequestException as exc:
                last_problem = f"request failed: {exc}"
            else:
                tag = self._extract_tag(body)
                if tag:
                    logger.info("Latest version available: %s", tag)
                    return tag
                last_problem = "response did not contain a tag_name"

            logger.warning(
                "Attempt %d/%d: failed to fetch the latest version (%s).",
                attempt,
                attempts,
                last_problem,
            )
            if attempt < attempts:
                self.sleep(self.retry.backoff_seconds)

        raise ReleaseLookupError(
            f"Failed to fetch the latest version after {attempts} attempts ({last_problem}). "
            "Please check your internet connection or GitHub API limits."
        )

    def _fetch_metadata(self) -> str:
        response = self.session.get(
            self.release.metadata_url,
            headers={"Accept": "application/vnd.github+json", "User-Agent": USER_AGENT},
            timeout=self.release.timeout,
        )
        return response.text

    def _extract_tag(self, body: str) -> str:
        """Pull ``tag_name`` out of *body* with the JSON helper tool."""
        try:
            result = subprocess.run(  # noqa: S603, S607 - controlled command execution
                [self.json_helper, "-r", ".tag_name"],
                input=body,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            logger.debug("JSON helper unavailable: %s", exc)
            return ""
        if result.returncode != 0:
            logger.debug("JSON helper rejected metadata: %s", (result.stderr or "").strip())
            return ""
        tag = (result.stdout or "").strip()
        if tag == "null":
            return ""
        return tag

    # ------------------------------------------------------------------
    # Archive download
    def asset_url(self, tag: str, architecture: str) -> str:
        """Return the archive URL for *tag*, rejecting unsupported CPUs."""
        self.check_architecture(architecture)
        return self.release.asset_url(tag)

    def check_architecture(self, architecture: str) -> None:
        """Fail fast when *architecture* has no published build."""
        normalized = ARCH_ALIASES.get(architecture, architecture)
        if normalized != self.release.architecture:
            raise ArchitectureUnsupportedError(f"Unsupported architecture: {architecture}")

    def fetch(self, url: str, destination: Path) -> Path:
        """Download *url* to *destination*; partial files are removed on failure."""
        logger.info("Downloading %s", url)
        try:
            with self.session.get(
                url,
                stream=True,
                allow_redirects=True,
                headers={"User-Agent": USER_AGENT},
                timeout=self.release.timeout,
            ) as response:
                response.raise_for_status()
                with destination.open("wb") as handle:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            handle.write(chunk)
        except (requests.RequestException, OSError) as exc:
            destination.unlink(missing_ok=True)
            raise DownloadError(
                f"Failed to download {url}: {exc}. Please check your internet connection."
            ) from exc
        logger.info("Downloaded: %s", destination)
        return destination


__all__ = ["ReleaseProvider", "detect_architecture"]
