"""
    MariaDB binary log backup - processed segment state store
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


The state file holds one segment name per line for every binary log that has
been uploaded and verified. It is only ever appended to, apart from
compaction which rewrites it via a temporary file and rename.

"""

import os
import time
import tempfile


class StateStore:
    """Append-only set of already uploaded segment names
    """
    def __init__(self, logger, path, max_entries=10000):
        """Open (create if needed) the state file

        :arg logger: logging object
        :arg path: str, path to the state file
        :arg max_entries: int, more lines than this is treated as corruption
        """
        self.logger = logger
        self.path = path
        self.max_entries = max_entries
        self.names = set()
        state_dir = os.path.dirname(self.path)
        if state_dir:
            os.makedirs(state_dir, exist_ok=True)
        if not os.path.isfile(self.path):
            open(self.path, 'at').close()
            self.logger.info("Created new state tracking file: %s", self.path)
            return
        lines = self._readlines()
        if len(lines) > self.max_entries:
            aside = '{}.corrupted.{}'.format(self.path, time.strftime('%Y%m%d-%H%M%S'))
            self.logger.warning("State file has %d entries - possible corruption, rotating to %s", len(lines), aside)
            os.rename(self.path, aside)
            open(self.path, 'at').close()
            return
        self.names = set(lines)

    def _readlines(self):
        with open(self.path, 'rt') as f_state:
            return [line.strip() for line in f_state if line.strip()]

    def __contains__(self, name):
        return name in self.names

    def __len__(self):
        return len(self.names)

    def __iter__(self):
        return iter(sorted(self.names))

    def add(self, name):
        """Record a name as processed (no-op if already present)

        :arg name: str, segment filename
        """
        if name in self.names:
            return
        with open(self.path, 'at') as f_state:
            f_state.write(name + '\n')
            f_state.flush()
            os.fsync(f_state.fileno())
        self.names.add(name)

    def compact(self, directory):
        """Drop names whose segment no longer exists in directory

        The remote copy is durable independent of the local file, so once the
        database has purged a segment there is nothing left to protect against.

        :arg directory: str, binary log directory
        :return: int, number of entries removed
        """
        keep = []
        removed = 0
        for name in self._readlines():
            if os.path.isfile(os.path.join(directory, name)):
                if name not in keep:    # duplicates from an interrupted append
                    keep.append(name)
            else:
                removed += 1
        if not removed:
            return 0
        fd_temp, temp_path = tempfile.mkstemp(prefix='.state-', dir=os.path.dirname(self.path) or '.')
        try:
            with os.fdopen(fd_temp, 'wt') as f_temp:
                for name in keep:
                    f_temp.write(name + '\n')
                f_temp.flush()
                os.fsync(f_temp.fileno())
            os.replace(temp_path, self.path)
        except BaseException:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
        self.names = set(keep)
        self.logger.info("Removed %d purged binlogs from state file", removed)
        return removed
