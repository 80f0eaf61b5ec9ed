import pytest

from conftest import make_snapshot, snapshot_data
from endpoint_doctor.snapshot import UNKNOWN, DiskInfo, DriveInfo, GpuInfo, RamInfo, Snapshot


def test_from_dict_defaults_missing_sections():
    snap = Snapshot.from_dict({})
    assert snap.network.dns_response == UNKNOWN
    assert snap.battery.has_battery is False
    assert snap.gpu.has_gpu is False
    assert snap.browsers == ()
    assert snap.antivirus.enabled is True


def test_from_dict_ignores_unknown_keys_and_builds_nested_records():
    data = snapshot_data(ram={"top_processes": [{"pid": 10, "name": "big.exe", "memory_mb": 900}]})
    data["scanner_version"] = "9.9"
    snap = Snapshot.from_dict(data)
    assert snap.ram.top_processes[0].name == "big.exe"
    assert snap.disk.drives[0].mount == "C:"
    assert snap.shell.launch_command == ("explorer.exe",)


def test_from_dict_rejects_wrong_shapes():
    with pytest.raises(ValueError):
        Snapshot.from_dict({"ram": "lots"})
    with pytest.raises(ValueError):
        Snapshot.from_dict({"disk": {"drives": "C:"}})
    with pytest.raises(ValueError):
        Snapshot.from_dict({"ram": {"total_mb": "sixteen"}})


def test_to_dict_feeds_back_into_from_dict():
    snap = make_snapshot(browsers=[{"name": "Chrome", "cache_mb": 300, "cache_paths": ["/tmp/c"]}])
    assert Snapshot.from_dict(snap.to_dict()) == snap


def test_ram_percent_used_handles_zero_total():
    assert RamInfo(total_mb=0, used_mb=100).percent_used == 0.0
    assert RamInfo(total_mb=1000, used_mb=333).percent_used == pytest.approx(33.3)


def test_percentages_are_not_rounded_before_use():
    assert RamInfo(total_mb=10000, used_mb=9504).percent_used == pytest.approx(95.04)
    assert DriveInfo("C:", 1000.0, 99.6).free_percent == pytest.approx(9.96)


def test_boolean_fields_parse_strictly():
    assert Snapshot.from_dict({"antivirus": {"enabled": "false"}}).antivirus.enabled is False
    assert Snapshot.from_dict({"antivirus": {"enabled": "True"}}).antivirus.enabled is True
    assert Snapshot.from_dict({"battery": {"has_battery": 0}}).battery.has_battery is False
    for bad in ("off-ish", 2, [True], 0.5):
        with pytest.raises(ValueError):
            Snapshot.from_dict({"antivirus": {"enabled": bad}})


def test_disk_free_percent_skips_unmeasured_drives():
    disk = DiskInfo(drives=(DriveInfo("C:", 100.0, 25.0), DriveInfo("D:", 0.0, 0.0), DriveInfo("E:", 100.0, 75.0)))
    assert disk.free_percent == pytest.approx(50.0)
    assert DiskInfo().free_percent == 0.0


def test_gpu_driver_age_unknown_date():
    assert GpuInfo(has_gpu=True).driver_age_days("2026-01-01T00:00:00+00:00") is None
    assert GpuInfo(has_gpu=True, driver_date="2025-01-01").driver_age_days("2026-01-01T00:00:00+00:00") == 365


def test_top_crashing_apps_ranked_by_count():
    snap = make_snapshot(event_log={"crashing_apps": [
        {"app_name": "b.exe", "count": 2},
        {"app_name": "a.exe", "count": 5},
        {"app_name": "c.exe", "count": 2},
        {"app_name": "", "count": 9},
    ]})
    names = [c.app_name for c in snap.event_log.top_crashing_apps(3)]
    assert names == ["a.exe", "b.exe", "c.exe"]
