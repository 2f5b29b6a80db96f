#!/usr/bin/env python3
"""
Helm Release Store for the O-Cloud rollback controller
Reads release status and history through `helm ... -o json` and issues
`helm rollback`.
"""

import asyncio
import json
import re
import subprocess
from datetime import datetime, timezone
from typing import List, Optional

from ocloud_rollback_config import Config
from ocloud_rollback_errors import (
    ReleaseStoreError,
    RevisionNotFound,
    RollbackRejected,
)
from ocloud_rollback_models import Lineage, Revision, RevisionStatus
from ocloud_rollback_utils import ComponentLogger

# Go's RFC3339Nano output carries up to nine fractional digits
_HELM_TIME = re.compile(
    r'^(?P<base>\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2})'
    r'(?:\.(?P<frac>\d+))?'
    r'\s*(?P<tz>Z|[+-]\d{2}:?\d{2})?'
)

_REJECT_MARKERS = (
    "another operation",
    "is in progress",
)

_MISSING_REVISION_MARKERS = (
    "release: not found",
    "has no",
    "revision not found",
)


def parse_helm_time(value: Optional[str]) -> datetime:
    """Parse helm's timestamps into aware UTC datetimes"""
    if not value:
        return datetime.fromtimestamp(0, tz=timezone.utc)
    match = _HELM_TIME.match(value.strip())
    if not match:
        raise ValueError(f"Unrecognized helm timestamp: {value}")
    text = match.group('base').replace(' ', 'T')
    frac = match.group('frac')
    if frac:
        text += '.' + frac[:6].ljust(6, '0')
    tz = match.group('tz')
    if not tz or tz == 'Z':
        tz = '+00:00'
    elif ':' not in tz:
        tz = f"{tz[:3]}:{tz[3:]}"
    return datetime.fromisoformat(text + tz).astimezone(timezone.utc)


class HelmReleaseStore(ComponentLogger):
    """ReleaseStore backed by the helm CLI"""

    def __init__(self, config: Config):
        self.config = config

    def execute_helm_command(self, args: List[str], timeout: float) -> subprocess.CompletedProcess:
        """Execute a helm command with error handling"""
        cmd = [self.config.helm_bin] + args
        self.logger.debug(f"Executing: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False
            )
        except subprocess.TimeoutExpired as e:
            self.log_error(f"Command timeout after {timeout}s: {' '.join(cmd)}", "HELM")
            raise ReleaseStoreError(f"helm timed out after {timeout}s") from e
        except OSError as e:
            self.log_error(f"Error executing command: {e}", "HELM")
            raise ReleaseStoreError(f"Unable to run {self.config.helm_bin}: {e}") from e

        if result.returncode != 0:
            self.logger.error(f"Command failed: {result.stderr.strip()}")
        return result

    async def _helm(self, args: List[str], timeout: float) -> subprocess.CompletedProcess:
        return await asyncio.to_thread(self.execute_helm_command, args, timeout)

    def _load_json(self, result: subprocess.CompletedProcess, what: str):
        try:
            return json.loads(result.stdout or 'null')
        except json.JSONDecodeError as e:
            raise ReleaseStoreError(f"Unparseable helm {what} output: {e}") from e

    async def current_revision(self, lineage: Lineage) -> Revision:
        result = await self._helm(
            ['status', lineage.release, '-n', lineage.namespace, '-o', 'json'],
            self.config.api_timeout
        )
        if result.returncode != 0:
            stderr = result.stderr.strip()
            if 'not found' in stderr.lower():
                raise RevisionNotFound(f"Release {lineage.release} not found in namespace {lineage.namespace}")
            raise ReleaseStoreError(f"helm status failed: {stderr}")

        data = self._load_json(result, 'status') or {}
        info = data.get('info') or {}
        try:
            revision_id = int(data['version'])
        except (KeyError, TypeError, ValueError) as e:
            raise ReleaseStoreError(f"helm status output has no revision: {e}") from e
        return Revision(
            id=revision_id,
            status=RevisionStatus.from_helm(info.get('status', '')),
            created_at=parse_helm_time(info.get('last_deployed')),
            description=info.get('description', '') or '',
        )

    async def history(self, lineage: Lineage, max_entries: Optional[int] = None) -> List[Revision]:
        """Revision history, newest first"""
        max_entries = max_entries or self.config.max_revisions
        result = await self._helm(
            ['history', lineage.release, '-n', lineage.namespace,
             '--max', str(max_entries), '-o', 'json'],
            self.config.api_timeout
        )
        if result.returncode != 0:
            stderr = result.stderr.strip()
            if 'not found' in stderr.lower():
                raise RevisionNotFound(f"Release {lineage.release} not found in namespace {lineage.namespace}")
            raise ReleaseStoreError(f"helm history failed: {stderr}")

        revisions = [
            Revision(
                id=int(entry['revision']),
                status=RevisionStatus.from_helm(entry.get('status', '')),
                created_at=parse_helm_time(entry.get('updated')),
                description=entry.get('description', '') or '',
            )
            for entry in (self._load_json(result, 'history') or [])
        ]
        revisions.sort(key=lambda r: r.id, reverse=True)

        deployed = [r.id for r in revisions if r.status == RevisionStatus.DEPLOYED]
        if len(deployed) > 1:
            self.log_warn(f"Release {lineage.key} reports several deployed revisions: {deployed}", "HELM")
        return revisions

    async def rollback(self, lineage: Lineage, target_revision_id: int,
                       timeout: Optional[float] = None) -> None:
        """Roll the release back and wait for helm to report it applied"""
        timeout = timeout or self.config.rollback_timeout
        result = await self._helm(
            ['rollback', lineage.release, str(target_revision_id),
             '-n', lineage.namespace, '--wait', f'--timeout={int(timeout)}s'],
            # give helm its own --timeout before killing it
            timeout + self.config.api_timeout
        )
        if result.returncode == 0:
            self.log_success(f"Rollback of {lineage.key} to revision {target_revision_id} accepted", "HELM")
            return

        stderr = result.stderr.strip()
        lowered = stderr.lower()
        if any(marker in lowered for marker in _REJECT_MARKERS):
            raise RollbackRejected(f"helm rejected rollback: {stderr}")
        if any(marker in lowered for marker in _MISSING_REVISION_MARKERS):
            raise RevisionNotFound(f"Revision {target_revision_id} does not exist for {lineage.release}: {stderr}")
        raise ReleaseStoreError(f"helm rollback failed: {stderr}")
