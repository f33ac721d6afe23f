import copy
import logging
import os

import pytest

from binlog_backup import DEFAULTS
from binlog_report import UploadHistory
from binlog_services import DatabaseError, StorageError
from binlog_state import StateStore


class FakeStorage:
    """In-memory stand-in for S3Storage"""

    def __init__(self):
        self.objects = {}
        self.uploads = []
        self.deleted = []
        self.fail_upload = set()
        self.size_override = {}
        self.credentials_ok = True
        self.bucket_ok = True

    def check_credentials(self):
        if not self.credentials_ok:
            raise StorageError("no credentials")

    def check_bucket(self):
        if not self.bucket_ok:
            raise StorageError("no bucket")

    def upload(self, path, key):
        name = os.path.basename(key)
        self.uploads.append(name)
        if name in self.fail_upload:
            raise StorageError(f"upload of {name} failed")
        self.objects[key] = os.path.getsize(path)

    def remote_size(self, key):
        name = os.path.basename(key)
        if name in self.size_override:
            return self.size_override[name]
        if key not in self.objects:
            raise StorageError(f"{key} not found")
        return self.objects[key]

    def delete(self, key):
        self.deleted.append(key)
        self.objects.pop(key, None)

    def count(self, prefix, contains=None):
        return len([key for key in self.objects if key.startswith(prefix) and (contains is None or contains in key)])


class FakeDatabase:
    """Stand-in for the MariaDB control interface"""

    def __init__(self, current="mysql-bin.000003", directory=None):
        self.current = current
        self.position = 1234
        self.directory = directory
        self.running = True
        self.log_bin = True
        self.reachable = True
        self.rotations = 0

    def is_running(self):
        return self.running

    def binlog_enabled(self):
        if not self.reachable:
            raise DatabaseError("cannot connect")
        return self.log_bin

    def ping(self):
        if not self.reachable:
            raise DatabaseError("cannot connect")

    def master_status(self):
        return self.current, self.position

    def current_segment(self):
        return self.current

    def rotate(self):
        self.rotations += 1
        number = int(self.current.rsplit(".", 1)[1]) + 1
        self.current = f"mysql-bin.{number:06d}"
        if self.directory is not None:
            with open(os.path.join(self.directory, self.current), "wb"):
                pass


@pytest.fixture
def logger():
    return logging.getLogger("test-binlog-backup")


@pytest.fixture
def binlog_dir(tmp_path):
    path = tmp_path / "mysql"
    path.mkdir()
    return path


@pytest.fixture
def config(tmp_path, binlog_dir):
    conf = copy.deepcopy(DEFAULTS)
    conf["common"]["database"] = str(tmp_path / "state" / "history.sqlite")
    conf["common"]["logfile"] = None
    conf["common"]["lockfile"] = str(tmp_path / "binlog-backup.lock")
    conf["common"]["report_file"] = str(tmp_path / "report.yaml")
    conf["mariadb"]["binlog_dir"] = str(binlog_dir)
    conf["mariadb"]["rotation_wait"] = 0
    conf["s3"]["bucket"] = "test-bucket"
    conf["state"]["file"] = str(tmp_path / "state" / "processed-binlogs")
    return conf


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def database(binlog_dir):
    return FakeDatabase(directory=str(binlog_dir))


@pytest.fixture
def history(config):
    hist = UploadHistory(config["common"]["database"])
    yield hist
    hist.close()


@pytest.fixture
def state(logger, config):
    return StateStore(logger, config["state"]["file"])


@pytest.fixture
def make_segments(binlog_dir):
    def _make(names, size=4096):
        for name in names:
            (binlog_dir / name).write_bytes(b"\0" * size)
    return _make
