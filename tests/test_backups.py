"""Tests for backup tag naming, creation and retention."""

from datetime import datetime

import pytest

from backups import (
    BackupImageTag, backup_age_days, cleanup_old_backups, create_backup, list_backups,
)
from errors import BackupFailed
from tests.conftest import FakeDocker, make_record

NOW = datetime(2024, 3, 15, 9, 30)


class TestBackupImageTag:

    def test_for_container(self):
        tag = BackupImageTag.for_container(make_record("Web", "nginx:1.25"), NOW)
        assert tag.reference == "dockcheck/web:2024-03-15_0930_1.25"
        assert tag.repository == "dockcheck/web"
        assert tag.tag == "2024-03-15_0930_1.25"

    def test_default_tag(self):
        tag = BackupImageTag.for_container(make_record("db", "postgres"), NOW)
        assert tag.reference.endswith("_latest")

    def test_parse(self):
        tag = BackupImageTag.parse("dockcheck/web:2024-03-01_0100_1.25-alpine")
        assert tag.container_name == "web"
        assert tag.original_tag == "1.25-alpine"
        assert tag.created_at == datetime(2024, 3, 1, 1, 0)

    @pytest.mark.parametrize("reference", [
        "nginx:latest",
        "dockcheck/web:latest",
        "dockcheck/web:2024-13-01_0100_latest",
    ])
    def test_parse_rejects_non_backups(self, reference):
        assert BackupImageTag.parse(reference) is None


class TestCreateBackup:

    def test_tags_running_image_id(self):
        docker = FakeDocker()
        record = make_record("web", "nginx:1.25")

        backup = create_backup(docker, record, now=NOW)

        assert docker.calls == [("tag_image", record.image_id, "dockcheck/web", "2024-03-15_0930_1.25")]
        assert backup.reference == "dockcheck/web:2024-03-15_0930_1.25"

    def test_dry_run_makes_no_call(self):
        docker = FakeDocker()
        create_backup(docker, make_record("web"), dry_run=True, now=NOW)
        assert docker.calls == []

    def test_tag_refused(self):
        docker = FakeDocker()
        docker.fail_tag = True
        with pytest.raises(BackupFailed):
            create_backup(docker, make_record("web"), now=NOW)


class TestRetention:

    @pytest.fixture
    def docker(self):
        docker = FakeDocker()
        docker.add_image("sha256:old", ["dockcheck/web:2024-03-01_0930_latest"])
        docker.add_image("sha256:new", ["dockcheck/web:2024-03-14_0930_latest"])
        docker.add_image("sha256:other", ["nginx:latest"])
        return docker

    def test_list_backups_only_namespace(self, docker):
        refs = [e["reference"] for e in list_backups(docker)]
        assert refs == [
            "dockcheck/web:2024-03-01_0930_latest",
            "dockcheck/web:2024-03-14_0930_latest",
        ]

    def test_age_from_tag_timestamp(self, docker):
        ages = [backup_age_days(e, NOW) for e in list_backups(docker)]
        assert ages == [14.0, 1.0]

    def test_cleanup_removes_only_expired(self, docker):
        removed = cleanup_old_backups(docker, 7, now=NOW)

        assert removed == ["dockcheck/web:2024-03-01_0930_latest"]
        assert ("remove_image", "dockcheck/web:2024-03-01_0930_latest") in docker.calls
        assert len([c for c in docker.calls if c[0] == "remove_image"]) == 1

    def test_cleanup_dry_run(self, docker):
        removed = cleanup_old_backups(docker, 7, dry_run=True, now=NOW)

        assert removed == ["dockcheck/web:2024-03-01_0930_latest"]
        assert docker.mutating_calls() == []

    def test_zero_days_keeps_everything(self, docker):
        assert cleanup_old_backups(docker, 0, now=NOW) == []
        assert docker.calls == []

    def test_runtime_unreachable_is_logged(self, caplog):
        docker = FakeDocker(reachable=False)
        assert cleanup_old_backups(docker, 7, now=NOW) == []
        assert "Could not list backup images" in caplog.text
