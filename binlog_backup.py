#!/usr/bin/env python3
"""
    MariaDB binary log backup - ships completed binary logs to S3
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


Run every 15 minutes from cron or a systemd timer. Each completed binary log
is uploaded exactly once and only recorded after the S3 copy is verified, so
anything that fails is simply picked up again by the next run. This bounds
the recovery point for point-in-time recovery between full backups.

"""

import sys
import os
import time
import fcntl
import copy
import contextlib
import logging
import logging.handlers
import yaml

from binlog_services import HOSTNAME, BackupError, PreflightError, MariaDB, S3Storage, send_mail, preflight
from binlog_state import StateStore
from binlog_sync import BinlogSync, SyncResult, human_size
import binlog_report


DEBUG = False   # if True we also log to console


# settings that are compared or calculated with, so must be real integers
INTEGER_SETTINGS = [
    ('mariadb', 'rotate_after'),
    ('state', 'max_entries'),
    ('report', 'daily_hour'),
    ('report', 'weekly_day'),
    ('report', 'expected_per_run'),
    ('report', 'high_volume_multiple'),
    ('report', 'failure_threshold'),
]


DEFAULTS = {
    'common': {
        'database': '/var/lib/backup-state/binlog-backup.sqlite',
        'mailcommand': 'mail',
        'email': 'root',
        'email_from': None,
        'logfile': '/var/log/backups/mariadb-binlog.log',
        'lockfile': '/run/lock/binlog-backup.lock',
        'report_file': '/var/lib/backup-state/binlog-backup-report.yaml',
    },
    'mariadb': {
        'service': 'mariadb',
        'defaults_file': None,
        'binlog_dir': '/var/lib/mysql',
        'binlog_basename': 'mysql-bin',
        'force_rotation': True,
        'rotate_after': 3600,
        'rotation_wait': 2,
    },
    's3': {
        'bucket': None,
        'prefix': 'mariadb-binlog',
        'region': None,
        'key_include_day': False,
        'retention_days': None,
    },
    'state': {
        'file': '/var/lib/backup-state/processed-binlogs',
        'max_entries': 10000,
    },
    'report': {
        'daily_hour': 8,
        'weekly_day': 1,    # ISO weekday, Monday
        'expected_per_run': 1,
        'high_volume_multiple': 10,
        'failure_threshold': 3,
    },
}


def load_config(configfile):
    """Read the config file and fill in defaults

    :arg configfile: str, path to YAML config
    :return: dict, config with every section present
    """
    with open(configfile, 'rt') as f_config:
        loaded = yaml.safe_load(f_config) or {}
    if not isinstance(loaded, dict):
        raise ValueError("top level of {} must be a mapping of sections".format(configfile))
    config = copy.deepcopy(DEFAULTS)
    for section, values in loaded.items():
        if section in config:
            if values is None:
                continue
            if not isinstance(values, dict):
                raise ValueError("{}: must be a mapping".format(section))
            config[section].update(values)
        else:
            config[section] = values
    for section, key in INTEGER_SETTINGS:
        value = config[section][key]
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError("{}: {} must be an integer, got {!r}".format(section, key, value))
    if not config['s3']['bucket']:
        raise ValueError("s3: bucket must be set in {}".format(configfile))
    if not 0 <= config['report']['daily_hour'] <= 23:
        raise ValueError("report: daily_hour must be 0-23")
    if not 1 <= config['report']['weekly_day'] <= 7:
        raise ValueError("report: weekly_day must be 1 (Monday) - 7 (Sunday)")
    return config


@contextlib.contextmanager
def process_lock(path):
    """Non-blocking exclusive lock for the duration of a run

    :yield: bool, False if another run holds the lock
    """
    lock_dir = os.path.dirname(path)
    if lock_dir:
        os.makedirs(lock_dir, exist_ok=True)
    with open(path, 'at') as f_lock:
        try:
            fcntl.flock(f_lock.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            yield False
            return
        try:
            yield True
        finally:
            fcntl.flock(f_lock.fileno(), fcntl.LOCK_UN)


class RunBackup:
    """One scheduled invocation
    """
    def __init__(self, logger, config, database, storage, history):
        """Constructor

        :param logger: logging object, passed through to log
        :param config: dict, loaded config file
        :param database: MariaDB (or compatible) control interface
        :param storage: S3Storage (or compatible) object storage
        :param history: binlog_report.UploadHistory
        """
        self.logger = logger
        self.config = config
        self.database = database
        self.storage = storage
        self.history = history
        self.sync = BinlogSync(logger, config, storage, history)

    def _operation_complete(self, result, duration, status):
        self.logger.info(
            "OPERATION_COMPLETE: service=backup operation=mariadb_binlog uploaded=%d failed=%d verified=%d size_bytes=%d duration_seconds=%d status=%s",
            result.uploaded, result.failed, self.sync.verified, result.uploaded_bytes, duration, status
        )

    def _write_report(self, report):
        report_file = self.config['common'].get('report_file')
        if not report_file:
            return
        try:
            with open(report_file + '.tmp', 'wt') as f_report:
                yaml.safe_dump(report, f_report, default_flow_style=False)
            os.replace(report_file + '.tmp', report_file)
        except OSError as exc:
            self.logger.error("Could not write report file %s: %s", report_file, exc)

    def _notify(self, kind, result, when):
        if kind == binlog_report.SILENT:
            return
        if kind == binlog_report.IMMEDIATE_ALERT:
            recent = self.history.recent_failures(when - 86400)
            subject, lines = binlog_report.alert_message(self.config, result, self.sync.failures, recent)
        else:
            try:
                s3_count = self.storage.count(self.sync.key_prefix(), self.config['mariadb']['binlog_basename'] + '.')
            except BackupError as exc:
                self.logger.warning("Could not count binlogs in S3: %s", exc)
                s3_count = None
            status = None
            if kind == binlog_report.WEEKLY_REPORT:
                try:
                    status = self.database.master_status()
                except BackupError as exc:
                    self.logger.warning("Could not read master status for report: %s", exc)
            subject, lines = binlog_report.summary_message(
                self.config, kind,
                self.history.summary(when - 86400),
                s3_count,
                status,
                self.config['s3'].get('retention_days')
            )
        send_mail(self.logger, self.config, subject, lines)

    def run(self, compact=False):
        """Do the backup

        :arg compact: bool, force state file compaction this run
        :return: int, exit status
        """
        start = time.time()
        report = {'start_time': int(start), 'host': HOSTNAME}
        self.logger.info("Starting binary log backup check")
        binlog_dir = self.config['mariadb']['binlog_dir']
        try:
            preflight(self.logger, self.config, self.database, self.storage)
            try:
                state = StateStore(self.logger, self.config['state']['file'], self.config['state']['max_entries'])
            except OSError as exc:
                raise PreflightError('Cannot open state file {}: {}'.format(self.config['state']['file'], exc))
            current = self.database.current_segment()
            if not current or not self.sync.segment_re.match(current):
                raise PreflightError('Cannot determine current binary log on {} (got {!r})'.format(HOSTNAME, current))
        except PreflightError as exc:
            self.logger.error("%s", exc)
            send_mail(self.logger, self.config, exc.subject, [str(exc)])
            self._operation_complete(SyncResult(0, 0, 0), int(time.time() - start), 'error')
            report.update({'finish_time': int(time.time()), 'status': 'error', 'error': str(exc)})
            self._write_report(report)
            return 1
        self.logger.info("Current binary log: %s", current)
        current = self.sync.rotate_if_stale(self.database, binlog_dir, current)
        result = self.sync.sync_once(binlog_dir, current, state)
        finish = time.time()
        duration = int(finish - start)
        status = 'warning' if result.failed else 'success'
        self._operation_complete(result, duration, status)
        summary_sent = self.history.summary_sent_since(binlog_report.hour_start(start))
        kind = binlog_report.choose_notification(self.config, result, start, summary_sent)
        self.history.record_run(result, duration, status, kind, start)
        self.logger.info("Notification: %s", kind)
        if compact or kind == binlog_report.WEEKLY_REPORT:
            self.logger.info("Cleaning state file of purged binlogs")
            state.compact(binlog_dir)
        self._notify(kind, result, start)
        self.history.prune(start - binlog_report.HISTORY_KEEP)
        report.update({
            'finish_time': int(time.time()),
            'status': status,
            'current_binlog': current,
            'uploaded': result.uploaded,
            'uploaded_bytes': result.uploaded_bytes,
            'failed': result.failed,
            'notification': kind,
        })
        self._write_report(report)
        self.logger.info(
            "Binary log backup check completed (uploaded: %d (%s), verified: %d, failed: %d)",
            result.uploaded, human_size(result.uploaded_bytes), self.sync.verified, result.failed
        )
        return 0


def setup_logger(config=None):
    logger = logging.getLogger('binlog-backup')
    log_level = logging.INFO
    if DEBUG:
        log_level = logging.DEBUG
    logger.setLevel(log_level)
    if not logger.handlers:
        syslog_handler = logging.handlers.SysLogHandler(
            address='/dev/log',
            facility=logging.handlers.SysLogHandler.LOG_DAEMON
        )
        syslog_handler.setFormatter(
            logging.Formatter(
                '%(name)s[%(process)d]: [%(levelname)s] %(message)s (%(filename)s:%(lineno)d)'
            )
        )
        syslog_handler.setLevel(log_level)
        logger.addHandler(syslog_handler)
        if DEBUG:
            logger.addHandler(logging.StreamHandler())
    if config is not None and config['common'].get('logfile'):
        log_dir = os.path.dirname(config['common']['logfile'])
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(config['common']['logfile'])
        file_handler.setFormatter(logging.Formatter('%(asctime)s - [%(levelname)s] %(message)s', '%Y-%m-%d %H:%M:%S'))
        file_handler.setLevel(log_level)
        logger.addHandler(file_handler)
    return logger


def main():
    # get logging up
    logger = setup_logger()
    logger.info("Starting up with args: %s", str(sys.argv[1:]) if len(sys.argv) > 1 else 'None')

    # arguments - config file, else looks for a few options
    # optional argument of --compact forces the state file cleanup this run
    args = {'compact': False}
    configfile = None
    for arg in sys.argv[1:]:
        if arg == '--compact':
            args['compact'] = True
        else:
            configfile = arg
    if configfile is None:
        if os.path.isfile('/etc/binlog-backup.yaml'):
            configfile = '/etc/binlog-backup.yaml'
        elif os.path.isfile('binlog-backup.yaml'):
            configfile = 'binlog-backup.yaml'
    if configfile is None or not os.path.isfile(configfile):
        logger.error("Can't find a config file (might be the command line argument)")
        sys.exit("FATAL - can't find a config file (might be the command line argument)\n")
    # read in conf
    logger.info("reading config from: %s", configfile)
    try:
        config = load_config(configfile)
    except (yaml.YAMLError, ValueError) as exc:
        logger.error("Bad config in %s: %s", configfile, exc)
        sys.exit("FATAL - bad config: {}\n".format(exc))
    setup_logger(config)

    with process_lock(config['common']['lockfile']) as locked:
        if not locked:
            logger.info("Another binary log backup is already running - skipping")
            sys.exit(0)
        history = binlog_report.UploadHistory(config['common']['database'])
        try:
            runner = RunBackup(logger, config, MariaDB(config), S3Storage(config), history)
            status = runner.run(args['compact'])
        except Exception:   # pylint: disable=broad-except
            logger.exception("Exception caught")
            status = 1
        finally:
            history.close()
    logger.info("exiting")
    sys.exit(status)


if __name__ == '__main__':
    main()
