"""
    MariaDB binary log backup - upload-once segment sync
    Copyright (C) 2011,2016  Glen Pitt-Pladdy

    This program is free software: you can redistribute it and/or modify
    it under the terms of the GNU General Public License as published by
    the Free Software Foundation, either version 3 of the License, or
    (at your option) any later version.

    This program is distributed in the hope that it will be useful,
    but WITHOUT ANY WARRANTY; without even the implied warranty of
    MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
    GNU General Public License for more details.

    You should have received a copy of the GNU General Public License
    along with this program.  If not, see <http://www.gnu.org/licenses/>.

"""

import os
import re
import time
import collections

from binlog_services import HOSTNAME, BackupError, StorageError


SyncResult = collections.namedtuple('SyncResult', ['uploaded', 'uploaded_bytes', 'failed'])


def human_size(size):
    """Format a byte count like numfmt --to=iec-i --suffix=B
    """
    size = float(size)
    for unit in ['B', 'KiB', 'MiB', 'GiB', 'TiB']:
        if abs(size) < 1024.0 or unit == 'TiB':
            break
        size /= 1024.0
    if unit == 'B':
        return '{:d}B'.format(int(size))
    return '{:.1f}{}'.format(size, unit)


class BinlogSync:
    """Upload each completed binary log segment exactly once
    """
    def __init__(self, logger, config, storage, history=None):
        """Setup

        :arg logger: logging object
        :arg config: dict, loaded config file
        :arg storage: object with upload(), remote_size(), delete()
        :arg history: UploadHistory|None, records per-file outcomes
        """
        self.logger = logger
        self.config = config
        self.storage = storage
        self.history = history
        self.segment_re = re.compile(r'^{}\.\d+$'.format(re.escape(config['mariadb']['binlog_basename'])))
        self.verified = 0
        self.failures = []    # (name, reason) for this invocation

    def key_prefix(self):
        return '{}/{}/'.format(self.config['s3']['prefix'].strip('/'), HOSTNAME)

    def remote_key(self, name, when=None):
        """Deterministic object key: prefix/host/YYYY/MM[/DD]/name
        """
        if when is None:
            when = time.time()
        date_format = '%Y/%m/%d' if self.config['s3'].get('key_include_day') else '%Y/%m'
        return '{}{}/{}'.format(self.key_prefix(), time.strftime(date_format, time.localtime(when)), name)

    @staticmethod
    def sequence(name):
        """Numeric suffix of a segment name, increasing in creation order"""
        return int(name.rsplit('.', 1)[1])

    def segments(self, directory):
        """Segment files in directory, oldest first"""
        return sorted(
            (
                item for item in os.listdir(directory)
                if self.segment_re.match(item) and os.path.isfile(os.path.join(directory, item))
            ),
            key=self.sequence
        )

    def rotate_if_stale(self, database, directory, current):
        """Force rotation if the active segment hasn't changed for too long

        Bounds how much un-uploaded data can sit in the active segment during
        quiet periods.

        :return: str, name of the active segment (new one if rotated)
        """
        if not self.config['mariadb'].get('force_rotation', True):
            return current
        path = os.path.join(directory, current)
        if not os.path.isfile(path):
            return current
        age = time.time() - os.path.getmtime(path)
        if age <= self.config['mariadb']['rotate_after']:
            return current
        self.logger.info("Current binary log is %d minutes old - forcing rotation", int(age / 60))
        try:
            database.rotate()
        except BackupError as exc:
            self.logger.warning("Could not flush binary logs: %s", exc)
            return current
        self.logger.info("Binary log rotation completed")
        time.sleep(self.config['mariadb']['rotation_wait'])
        try:
            new_current = database.current_segment()
        except BackupError as exc:
            self.logger.warning("Could not re-read current binary log after rotation: %s", exc)
            return current
        if new_current and new_current != current:
            self.logger.info("New current binary log: %s", new_current)
            return new_current
        return current

    def _fail(self, name, reason):
        self.logger.error("Failed to upload %s: %s", name, reason)
        self.failures.append((name, reason))
        if self.history is not None:
            self.history.record(name, 0, 'failed', reason)

    def upload_one(self, directory, name, state):
        """Upload, verify and record one segment

        :return: int|None, bytes uploaded or None on failure
        """
        path = os.path.join(directory, name)
        self.logger.info("Processing new binary log: %s", name)
        try:
            size = os.path.getsize(path)
        except OSError as exc:
            self._fail(name, 'cannot stat local file: {}'.format(exc))
            return None
        key = self.remote_key(name)
        start = time.time()
        try:
            self.storage.upload(path, key)
        except StorageError as exc:
            self._fail(name, str(exc))
            return None
        duration = int(time.time() - start)
        self.logger.info("Uploaded %s (%s) in %ds", name, human_size(size), duration)
        # verify against the same key we uploaded to
        try:
            remote_size = self.storage.remote_size(key)
        except StorageError as exc:
            self.logger.warning("Upload verification failed for %s: %s", name, exc)
            remote_size = 0
        if remote_size != size:
            self._fail(name, 'size mismatch (local: {}, S3: {})'.format(size, remote_size))
            try:
                self.storage.delete(key)
            except StorageError as exc:
                self.logger.warning("Could not remove bad upload %s: %s", key, exc)
            return None
        self.verified += 1
        state.add(name)
        if self.history is not None:
            self.history.record(name, size, 'uploaded')
        self.logger.info(
            "BINLOG_UPLOADED: file=%s size_bytes=%d duration_seconds=%d verified=true",
            name, size, duration
        )
        return size

    def sync_once(self, directory, current, state):
        """Upload every completed segment not already recorded in state

        A segment that fails is not recorded so the next invocation retries it.

        :arg directory: str, binary log directory
        :arg current: str, segment being written (never uploaded)
        :arg state: StateStore
        :return: SyncResult, (uploaded, uploaded_bytes, failed)
        """
        uploaded = 0
        uploaded_bytes = 0
        failed = 0
        # the server may have rotated since current was read, so anything at or
        # after it could still be open for writing
        candidates = [name for name in self.segments(directory) if self.sequence(name) < self.sequence(current)]
        if not candidates:
            self.logger.info("No completed binary logs found to upload")
        for name in candidates:
            if name in state:
                continue
            size = self.upload_one(directory, name, state)
            if size is None:
                failed += 1
            else:
                uploaded += 1
                uploaded_bytes += size
        return SyncResult(uploaded, uploaded_bytes, failed)
