"""
    MariaDB binary log backup - outcome history and notification cadence
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


The backup runs every 15 minutes, so almost every run must stay quiet. Mail
goes out immediately on failure or unusual volume, otherwise once a day with
a summary, upgraded to a detailed report once a week.

"""

import os
import time
import sqlite3
import textwrap

from binlog_services import HOSTNAME
from binlog_sync import human_size


SILENT = 'silent'
IMMEDIATE_ALERT = 'immediate_alert'
DAILY_SUMMARY = 'daily_summary'
WEEKLY_REPORT = 'weekly_report'

HISTORY_KEEP = 35 * 86400

DAY_NAMES = ['Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday']


def hour_start(when):
    """Epoch of the start of the local hour containing when"""
    now = time.localtime(when)
    return int(when) - now.tm_min * 60 - now.tm_sec


def choose_notification(config, result, when=None, summary_sent=False):
    """Decide what (if anything) to send for this invocation

    Several runs land in the summary hour, only the first one sends it.

    :arg config: dict, loaded config file
    :arg result: SyncResult, outcome of this invocation
    :arg when: float|None, epoch of the invocation
    :arg summary_sent: bool, a summary already went out this hour
    :return: str, one of SILENT, IMMEDIATE_ALERT, DAILY_SUMMARY, WEEKLY_REPORT
    """
    if when is None:
        when = time.time()
    report = config['report']
    if result.failed > 0:
        return IMMEDIATE_ALERT
    if result.uploaded > report['expected_per_run'] * report['high_volume_multiple']:
        return IMMEDIATE_ALERT
    now = time.localtime(when)
    if now.tm_hour == report['daily_hour'] and not summary_sent:
        # tm_wday is 0 for Monday, weekly_day uses ISO numbering (1 = Monday)
        if now.tm_wday + 1 == report['weekly_day']:
            return WEEKLY_REPORT
        return DAILY_SUMMARY
    return SILENT


class UploadHistory:
    """Persistent record of upload outcomes and runs

    Reporting is derived from this log rather than from any separate state.
    """
    def __init__(self, database):
        if database != ':memory:' and os.path.dirname(database):
            os.makedirs(os.path.dirname(database), exist_ok=True)
        self.db = sqlite3.connect(database)
        self.db.row_factory = sqlite3.Row
        self.dbcur = self.db.cursor()
        # put the tables in we need (if we need them)
        self.dbcur.execute(textwrap.dedent("""\
            CREATE TABLE IF NOT EXISTS `UploadLog` (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                Time INT UNSIGNED NOT NULL,
                File TEXT NOT NULL,
                Size INT UNSIGNED NOT NULL DEFAULT 0,
                Status CHAR(10) NOT NULL,
                Detail TEXT
            )"""))
        self.dbcur.execute('CREATE INDEX IF NOT EXISTS UploadLog_Time ON UploadLog(Time)')
        self.dbcur.execute(textwrap.dedent("""\
            CREATE TABLE IF NOT EXISTS `RunLog` (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                Time INT UNSIGNED NOT NULL,
                Uploaded INT UNSIGNED NOT NULL,
                Failed INT UNSIGNED NOT NULL,
                Bytes INT UNSIGNED NOT NULL,
                Duration INT UNSIGNED NOT NULL,
                Status CHAR(10) NOT NULL,
                Notification CHAR(20) NOT NULL DEFAULT 'silent'
            )"""))
        self.dbcur.execute('CREATE INDEX IF NOT EXISTS RunLog_Time ON RunLog(Time)')
        self.db.commit()
        # make sure the database is not accessible by others
        if database != ':memory:':
            os.chmod(database, 0o600)

    def close(self):
        self.db.close()

    def record(self, name, size, status, detail=None, when=None):
        if when is None:
            when = time.time()
        self.dbcur.execute(
            'INSERT INTO UploadLog (Time,File,Size,Status,Detail) VALUES (?,?,?,?,?)',
            [int(when), name, size, status, detail]
        )
        self.db.commit()

    def record_run(self, result, duration, status, notification=SILENT, when=None):
        if when is None:
            when = time.time()
        self.dbcur.execute(
            'INSERT INTO RunLog (Time,Uploaded,Failed,Bytes,Duration,Status,Notification) VALUES (?,?,?,?,?,?,?)',
            [int(when), result.uploaded, result.failed, result.uploaded_bytes, int(duration), status, notification]
        )
        self.db.commit()

    def summary_sent_since(self, since):
        self.dbcur.execute(
            'SELECT COUNT(*) FROM RunLog WHERE Time >= ? AND Notification IN (?,?)',
            [int(since), DAILY_SUMMARY, WEEKLY_REPORT]
        )
        return self.dbcur.fetchone()['COUNT(*)'] > 0

    def summary(self, since):
        """Totals since an epoch

        :return: dict, uploads, bytes, errors, runs
        """
        self.dbcur.execute(
            "SELECT COUNT(*) AS Uploads, COALESCE(SUM(Size),0) AS Bytes FROM UploadLog WHERE Time >= ? AND Status = 'uploaded'",
            [int(since)]
        )
        row = self.dbcur.fetchone()
        summary = {'uploads': row['Uploads'], 'bytes': row['Bytes']}
        self.dbcur.execute("SELECT COUNT(*) FROM UploadLog WHERE Time >= ? AND Status = 'failed'", [int(since)])
        summary['errors'] = self.dbcur.fetchone()['COUNT(*)']
        self.dbcur.execute('SELECT COUNT(*) FROM RunLog WHERE Time >= ?', [int(since)])
        summary['runs'] = self.dbcur.fetchone()['COUNT(*)']
        return summary

    def recent_failures(self, since):
        self.dbcur.execute("SELECT COUNT(*) FROM UploadLog WHERE Time >= ? AND Status = 'failed'", [int(since)])
        return self.dbcur.fetchone()['COUNT(*)']

    def prune(self, before):
        self.dbcur.execute('DELETE FROM UploadLog WHERE Time < ?', [int(before)])
        self.dbcur.execute('DELETE FROM RunLog WHERE Time < ?', [int(before)])
        self.db.commit()


def alert_message(config, result, failures, recent_failures):
    """Subject and lines for an immediate alert

    :arg failures: list, (name, reason) for this invocation
    :arg recent_failures: int, failures in the last 24 hours including this run
    """
    if result.failed:
        if recent_failures > config['report']['failure_threshold']:
            subject = f'[BACKUP CRITICAL] Binary Log Upload Failing Repeatedly - {HOSTNAME}'
        else:
            subject = f'[BACKUP ERROR] Binary Log Upload Failed - {HOSTNAME}'
        lines = [
            f'Failed to upload {result.failed} binary log(s) on {HOSTNAME}',
            '',
        ]
        for name, reason in failures:
            lines.append(f'- {name}: {reason}')
        lines.extend([
            '',
            f'Failures in the last 24 hours: {recent_failures}',
            'Failed logs are retried on the next run - check network connectivity and AWS credentials.',
        ])
    else:
        subject = f'[Backup] Binary Logs - high volume: {result.uploaded} logs uploaded - {HOSTNAME}'
        lines = [
            f'Unusually high binary log volume on {HOSTNAME}',
            '',
            f'- Binlogs uploaded this run: {result.uploaded}',
            f'- Total size: {human_size(result.uploaded_bytes)}',
            f'- Expected per run: {config["report"]["expected_per_run"]}',
        ]
    return subject, lines


def summary_message(config, kind, summary, s3_count, status=None, retention=None):
    """Subject and lines for the daily summary or weekly report

    :arg kind: str, DAILY_SUMMARY or WEEKLY_REPORT
    :arg summary: dict, from UploadHistory.summary()
    :arg s3_count: int|None, segments stored for this host (None if unknown)
    :arg status: tuple|None, (current segment, position) for weekly reports
    """
    mark = 'WARNING' if summary['errors'] else 'OK'
    s3_total = 'unknown' if s3_count is None else str(s3_count)
    s3_path = 's3://{}/{}/{}/'.format(config['s3']['bucket'], config['s3']['prefix'].strip('/'), HOSTNAME)
    if kind == DAILY_SUMMARY:
        lines = [
            f'{mark}: MariaDB binary logs on {HOSTNAME}',
            '',
            f'Last 24h: {summary["uploads"]} logs uploaded ({human_size(summary["bytes"])})',
        ]
        if summary['errors']:
            lines.append(f'Errors: {summary["errors"]} upload failures')
        lines.extend([
            f'Total in S3: {s3_total} logs | RPO: 15 minutes',
            '',
            'Weekly detailed report on {}s.'.format(DAY_NAMES[config['report']['weekly_day'] - 1]),
        ])
        return f'[Backup] Binary Logs - {mark} {HOSTNAME}', lines
    current, position = status if status else (None, None)
    if config['mariadb'].get('force_rotation', True):
        rotation = '{} minutes'.format(int(config['mariadb']['rotate_after'] / 60))
    else:
        rotation = 'server max_binlog_size only'
    lines = [
        f'MariaDB Binary Log Weekly Report - {HOSTNAME}',
        'Report Date: {}'.format(time.strftime('%a, %d %b %Y %H:%M:%S %Z')),
        '',
        'Last 24 Hours:',
        f'- Binlogs uploaded: {summary["uploads"]}',
        f'- Total size: {human_size(summary["bytes"])}',
        f'- Upload errors: {summary["errors"]}',
        f'- Runs completed: {summary["runs"]}',
        f'- Total binlogs in S3: {s3_total}',
        '',
        'Configuration:',
        '- Check frequency: Every 15 minutes',
        f'- Rotation trigger: {rotation}',
        '- S3 retention: {} days'.format(retention if retention is not None else 'bucket policy'),
        f'- S3 path: {s3_path}',
        '',
        'Binary Log Health:',
        '- Binary logging: Enabled',
        '- Current binlog: {}'.format(current or 'unknown'),
        '- Position: {}'.format(position if position is not None else 'unknown'),
        '',
        'Recovery Point Objective (RPO): 15 minutes maximum',
        '',
        'Point-in-Time Recovery Instructions:',
        '1. Restore the latest full backup',
        '2. Download binary logs since the backup:',
        f'   aws s3 sync {s3_path} /tmp/binlogs/',
        '3. Apply binary logs in sequence:',
        "   for log in $(find /tmp/binlogs -name '{}.[0-9]*' | sort); do".format(config['mariadb']['binlog_basename']),
        '     mysqlbinlog $log | mysql',
        '   done',
        '4. Verify data consistency',
    ]
    return f'[Backup] Binary Logs Weekly - {mark} {HOSTNAME}', lines
