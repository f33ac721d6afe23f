"""
    MariaDB binary log backup - external services
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


Wrappers for everything outside this process: the MariaDB server (through
the mysql client and systemctl), S3 (through boto3) and the mail command.

"""

import os
import socket
import subprocess
import boto3
import botocore.exceptions


HOSTNAME = socket.gethostname()    # used for subjects, keys etc.


class BackupError(Exception):
    """Base for errors raised by the backup"""


class PreflightError(BackupError):
    """Something this invocation depends on is not available

    :arg subject: str, alert subject for the notification
    """
    def __init__(self, message, subject='[BACKUP ERROR] Binary Log Backup Preflight Failed'):
        super().__init__(message)
        self.subject = subject


class DatabaseError(BackupError):
    """mysql client call failed"""


class StorageError(BackupError):
    """S3 call failed"""


def send_mail(logger, config, subject, lines):
    """Send email

    Delivery problems are logged only, they never stop the backup.

    :arg subject: str, subject of email
    :arg lines: list, email content as individual lines
    :return: bool, True if the mail command accepted the message
    """
    command = [config['common']['mailcommand'], '-s', subject]
    if config['common'].get('email_from'):
        command.extend(['-r', config['common']['email_from']])
    command.append(config['common']['email'])
    try:
        mail_proc = subprocess.Popen(
            command,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE
        )
        _out, err = mail_proc.communicate("\n".join(lines).encode('utf-8'))
    except OSError as exc:
        logger.error("Mail command failed for '%s': %s", subject, exc)
        return False
    if mail_proc.returncode != 0:
        logger.error("Mail command returned %d for '%s': %s", mail_proc.returncode, subject, err.decode('utf-8', 'replace').strip())
        return False
    logger.info("Sent mail: %s", subject)
    return True


class MariaDB:
    """Control interface to the local MariaDB server via the mysql client
    """
    def __init__(self, config):
        self.config = config
        self.service = config['mariadb']['service']

    def _query(self, sql, vertical=False):
        command = ['mysql']
        if self.config['mariadb'].get('defaults_file'):
            command.append('--defaults-file={}'.format(self.config['mariadb']['defaults_file']))
        command.extend(['-e', sql])
        if not vertical:
            command.extend(['-s', '-N'])
        try:
            result = subprocess.run(command, stdout=subprocess.PIPE, stderr=subprocess.PIPE, check=False)
        except OSError as exc:
            raise DatabaseError('mysql client could not be run: {}'.format(exc))
        if result.returncode != 0:
            raise DatabaseError('mysql "{}" failed: {}'.format(sql, result.stderr.decode('utf-8', 'replace').strip()))
        return result.stdout.decode('utf-8')

    def is_running(self):
        result = subprocess.run(['systemctl', 'is-active', '--quiet', self.service], check=False)
        return result.returncode == 0

    def ping(self):
        self._query('SELECT 1')

    def binlog_enabled(self):
        output = self._query("SHOW VARIABLES LIKE 'log_bin';")
        fields = output.split()
        return len(fields) >= 2 and fields[1] == 'ON'

    def master_status(self):
        """Current segment being written and position within it

        :return: tuple, (str|None filename, int|None position)
        """
        filename = None
        position = None
        for line in self._query('SHOW MASTER STATUS\\G', vertical=True).splitlines():
            key, _, value = line.strip().partition(':')
            if key == 'File':
                filename = value.strip() or None
            elif key == 'Position' and value.strip().isdigit():
                position = int(value.strip())
        return filename, position

    def current_segment(self):
        return self.master_status()[0]

    def rotate(self):
        self._query('FLUSH BINARY LOGS;')


class S3Storage:
    """Object storage for segments
    """
    def __init__(self, config, session=None):
        self.bucket = config['s3']['bucket']
        if session is None:
            session = boto3.session.Session(region_name=config['s3'].get('region'))
        self.session = session
        self.client = session.client('s3')

    def _fail(self, action, key, exc):
        return StorageError('{} s3://{}/{} failed: {}'.format(action, self.bucket, key, exc))

    def check_credentials(self):
        try:
            self.session.client('sts').get_caller_identity()
        except (botocore.exceptions.BotoCoreError, botocore.exceptions.ClientError) as exc:
            raise StorageError('AWS credentials not configured or invalid: {}'.format(exc))

    def check_bucket(self):
        try:
            self.client.head_bucket(Bucket=self.bucket)
        except (botocore.exceptions.BotoCoreError, botocore.exceptions.ClientError) as exc:
            raise StorageError('Cannot access S3 bucket {}: {}'.format(self.bucket, exc))

    def upload(self, path, key):
        try:
            self.client.upload_file(path, self.bucket, key)
        except (botocore.exceptions.BotoCoreError, botocore.exceptions.ClientError, boto3.exceptions.S3UploadFailedError, OSError) as exc:
            raise self._fail('upload to', key, exc)

    def remote_size(self, key):
        try:
            return int(self.client.head_object(Bucket=self.bucket, Key=key)['ContentLength'])
        except (botocore.exceptions.BotoCoreError, botocore.exceptions.ClientError) as exc:
            raise self._fail('head', key, exc)

    def delete(self, key):
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (botocore.exceptions.BotoCoreError, botocore.exceptions.ClientError) as exc:
            raise self._fail('delete', key, exc)

    def count(self, prefix, contains=None):
        """Count objects below prefix, optionally only keys containing a string
        """
        total = 0
        paginator = self.client.get_paginator('list_objects_v2')
        try:
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for item in page.get('Contents', []):
                    if contains is None or contains in item['Key']:
                        total += 1
        except (botocore.exceptions.BotoCoreError, botocore.exceptions.ClientError) as exc:
            raise self._fail('list', prefix, exc)
        return total


def preflight(logger, config, database, storage):
    """Check everything we depend on before touching any state

    :raises PreflightError: on the first check that fails
    """
    logger.info("Pre-flight: Checking MariaDB service")
    if not database.is_running():
        raise PreflightError(
            'MariaDB service is down on {} - binary logs cannot be backed up'.format(HOSTNAME),
            '[BACKUP ERROR] MariaDB Service Down'
        )
    logger.info("Pre-flight: Checking binary logging status")
    try:
        enabled = database.binlog_enabled()
    except DatabaseError as exc:
        raise PreflightError(
            'Cannot connect to MariaDB on {} - check backup credentials: {}'.format(HOSTNAME, exc),
            '[BACKUP ERROR] MariaDB Connection Failed'
        )
    if not enabled:
        raise PreflightError(
            'CRITICAL: Binary logging is disabled on {} - point-in-time recovery is not possible!'.format(HOSTNAME),
            '[BACKUP CRITICAL] Binary Logging Disabled'
        )
    logger.info("Pre-flight: Testing MariaDB connectivity")
    try:
        database.ping()
    except DatabaseError as exc:
        raise PreflightError(
            'Cannot connect to MariaDB on {} - check backup credentials: {}'.format(HOSTNAME, exc),
            '[BACKUP ERROR] MariaDB Connection Failed'
        )
    logger.info("Pre-flight: Checking binary log directory")
    binlog_dir = config['mariadb']['binlog_dir']
    if not os.path.isdir(binlog_dir):
        raise PreflightError('Binary log directory does not exist: {}'.format(binlog_dir))
    if not os.access(binlog_dir, os.R_OK | os.X_OK):
        raise PreflightError('Cannot read binary log directory: {}'.format(binlog_dir))
    logger.info("Pre-flight: Checking AWS credentials")
    try:
        storage.check_credentials()
    except StorageError as exc:
        raise PreflightError(
            'AWS credentials invalid on {} - binary logs cannot be uploaded: {}'.format(HOSTNAME, exc),
            '[BACKUP ERROR] AWS Credentials Invalid'
        )
    logger.info("Pre-flight: Checking S3 bucket access")
    try:
        storage.check_bucket()
    except StorageError as exc:
        raise PreflightError(str(exc))
    logger.info("Pre-flight: All checks passed")
