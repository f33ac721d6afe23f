"""Tests for the MariaDB, S3 and mail wrappers and the preflight checks."""

from __future__ import annotations

import subprocess

import boto3
import pytest
from botocore.stub import Stubber

import binlog_services
from binlog_services import MariaDB, PreflightError, S3Storage, StorageError, preflight, send_mail


class TestSendMail:
    def test_accepted(self, logger, config):
        config["common"]["mailcommand"] = "true"
        assert send_mail(logger, config, "subject", ["line one", "line two"]) is True

    def test_failure_is_not_fatal(self, logger, config):
        config["common"]["mailcommand"] = "false"
        assert send_mail(logger, config, "subject", ["body"]) is False

    def test_missing_command(self, logger, config):
        config["common"]["mailcommand"] = "/nonexistent/mail"
        assert send_mail(logger, config, "subject", ["body"]) is False


class TestMariaDB:
    def fake_run(self, monkeypatch, stdout, returncode=0):
        calls = []

        def run(command, **kwargs):
            calls.append(command)
            return subprocess.CompletedProcess(command, returncode, stdout.encode("utf-8"), b"ERROR 2002")

        monkeypatch.setattr(binlog_services.subprocess, "run", run)
        return calls

    def test_master_status(self, monkeypatch, config):
        config["mariadb"]["defaults_file"] = "/etc/mysql/backup.cnf"
        calls = self.fake_run(monkeypatch, master_status_output())
        assert MariaDB(config).master_status() == ("mysql-bin.000123", 4567)
        assert calls[0][:2] == ["mysql", "--defaults-file=/etc/mysql/backup.cnf"]

    def test_binlog_enabled(self, monkeypatch, config):
        self.fake_run(monkeypatch, "log_bin\tON\n")
        assert MariaDB(config).binlog_enabled() is True
        self.fake_run(monkeypatch, "log_bin\tOFF\n")
        assert MariaDB(config).binlog_enabled() is False

    def test_client_error_raised(self, monkeypatch, config):
        self.fake_run(monkeypatch, "", returncode=1)
        with pytest.raises(binlog_services.DatabaseError):
            MariaDB(config).rotate()


def master_status_output():
    return (
        "*************************** 1. row ***************************\n"
        "            File: mysql-bin.000123\n"
        "        Position: 4567\n"
        "    Binlog_Do_DB: \n"
        "Binlog_Ignore_DB: \n"
    )


@pytest.fixture
def s3(config):
    session = boto3.session.Session(
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
        region_name="us-east-1",
    )
    storage = S3Storage(config, session=session)
    with Stubber(storage.client) as stubber:
        yield storage, stubber


class TestS3Storage:
    def test_remote_size(self, s3):
        storage, stubber = s3
        stubber.add_response("head_object", {"ContentLength": 4096}, {"Bucket": "test-bucket", "Key": "a/mysql-bin.000002"})
        assert storage.remote_size("a/mysql-bin.000002") == 4096

    def test_missing_object_is_storage_error(self, s3):
        storage, stubber = s3
        stubber.add_client_error("head_object", service_error_code="404", http_status_code=404)
        with pytest.raises(StorageError):
            storage.remote_size("a/mysql-bin.000002")

    def test_count_filters_keys(self, s3):
        storage, stubber = s3
        stubber.add_response(
            "list_objects_v2",
            {
                "Contents": [{"Key": "p/h/2026/10/mysql-bin.000001"}, {"Key": "p/h/2026/10/notes.txt"}],
                "IsTruncated": False,
            },
            {"Bucket": "test-bucket", "Prefix": "p/h/"},
        )
        assert storage.count("p/h/", "mysql-bin.") == 1

    def test_bucket_check(self, s3):
        storage, stubber = s3
        stubber.add_client_error("head_bucket", service_error_code="403", http_status_code=403)
        with pytest.raises(StorageError):
            storage.check_bucket()


class TestPreflight:
    def test_all_good(self, logger, config, database, storage):
        preflight(logger, config, database, storage)

    def test_binlog_disabled(self, logger, config, database, storage):
        database.log_bin = False
        with pytest.raises(PreflightError) as excinfo:
            preflight(logger, config, database, storage)
        assert excinfo.value.subject == "[BACKUP CRITICAL] Binary Logging Disabled"

    def test_cannot_connect(self, logger, config, database, storage):
        database.reachable = False
        with pytest.raises(PreflightError) as excinfo:
            preflight(logger, config, database, storage)
        assert excinfo.value.subject == "[BACKUP ERROR] MariaDB Connection Failed"

    def test_missing_binlog_dir(self, logger, config, database, storage, tmp_path):
        config["mariadb"]["binlog_dir"] = str(tmp_path / "missing")
        with pytest.raises(PreflightError, match="does not exist"):
            preflight(logger, config, database, storage)

    def test_bad_credentials(self, logger, config, database, storage):
        storage.credentials_ok = False
        with pytest.raises(PreflightError) as excinfo:
            preflight(logger, config, database, storage)
        assert excinfo.value.subject == "[BACKUP ERROR] AWS Credentials Invalid"

    def test_bucket_unreachable(self, logger, config, database, storage):
        storage.bucket_ok = False
        with pytest.raises(PreflightError):
            preflight(logger, config, database, storage)
