import json

import pytest

from willbatch import main as cli_main

WILL_CSV = (
    "Testator Name,Date of Birth,Address,Postcode,Will Location,Solicitor Name,Will Date\n"
    "Ann Lee,01/02/1950,1 Mill Lane,SW1A 1AA,With Solicitor,Jones LLP,2020-01-01\n"
    "Bob Ray,1951-03-04,2 Mill Lane,LS1 4AP,Bank,Jones LLP,2020-02-01\n"
    "Cat Moss,05-06-1952,3 Mill Lane,nowhere,At Home,Jones LLP,2020-03-01\n"
)


@pytest.fixture()
def config(tmp_path, monkeypatch):
    monkeypatch.delenv("WILLBATCH_DATA_ROOT", raising=False)
    path = tmp_path / "settings.toml"
    path.write_text(
        f'[app]\ndata_root = "{(tmp_path / "data").as_posix()}"\n'
        f'logging_config = "{(tmp_path / "missing.yaml").as_posix()}"\n'
        "[jobs]\nbatch_size = 2\nbatch_delay = 0\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture()
def will_csv(tmp_path):
    path = tmp_path / "firm_upload.csv"
    path.write_text(WILL_CSV, encoding="utf-8")
    return path


def _run(capsys, *argv):
    cli_main.main(list(argv))
    return json.loads(capsys.readouterr().out)


def _submit(capsys, config, will_csv, *extra):
    return _run(capsys, "--config", str(config), "submit", str(will_csv),
                "--firm-id", "FIRM_001", "--user-id", "USER_001", *extra)


def test_submit_and_run(capsys, config, will_csv):
    job = _submit(capsys, config, will_csv, "--run")

    assert job["status"] == "complete"
    assert job["total_batches"] == 2
    assert (job["successful_records"], job["failed_records"]) == (2, 1)

    detail = _run(capsys, "--config", str(config), "show", job["id"])
    assert detail["errors"][0]["row"] == 3
    assert "data" not in detail
    assert detail["percent_complete"] == 100.0


def test_submit_reports_unmapped_fields(capsys, config, tmp_path):
    bare = tmp_path / "bare.csv"
    bare.write_text("Name,Notes\nAnn Lee,x\n", encoding="utf-8")

    with pytest.raises(SystemExit) as excinfo:
        cli_main.main(["--config", str(config), "submit", str(bare), "--firm-id", "F", "--user-id", "U"])

    assert excinfo.value.code == 1
    payload = json.loads(capsys.readouterr().out)
    assert "dob" in payload["fields"]
    assert "testatorName" not in payload["fields"]


def test_fixed_value_fills_missing_column(capsys, config, tmp_path):
    upload = tmp_path / "no_location.csv"
    upload.write_text(
        "Client,DOB,Address,Postcode,Solicitor,Will Date\n"
        "Ann Lee,01/02/1950,1 Mill Lane,SW1A 1AA,Jones LLP,2020-01-01\n",
        encoding="utf-8",
    )

    job = _submit(capsys, config, upload, "--fixed", "willLocation=With Solicitor", "--run")

    assert job["successful_records"] == 1


def test_cancel_retry_and_run(capsys, config, will_csv):
    queued = _submit(capsys, config, will_csv)
    assert queued["status"] == "queued"

    cancelled = _run(capsys, "--config", str(config), "cancel", queued["id"])
    assert cancelled["status"] == "cancelled"
    assert cancelled["can_retry"] is True

    with pytest.raises(SystemExit) as excinfo:
        cli_main.main(["--config", str(config), "cancel", queued["id"]])
    assert excinfo.value.code == 1
    assert "cannot cancel" in json.loads(capsys.readouterr().out)["error"]

    retried = _run(capsys, "--config", str(config), "retry", queued["id"])
    assert retried["retry_of"] == queued["id"]
    assert retried["total_records"] == 3

    finished = _run(capsys, "--config", str(config), "run")
    assert [job["id"] for job in finished] == [retried["id"]]
    assert finished[0]["status"] == "complete"

    listing = _run(capsys, "--config", str(config), "jobs", "--status", "cancelled")
    assert [job["id"] for job in listing] == [queued["id"]]


def test_unknown_job_exits_with_error(capsys, config):
    with pytest.raises(SystemExit):
        cli_main.main(["--config", str(config), "show", "JOB_404"])
    payload = json.loads(capsys.readouterr().out)
    assert payload["kind"] == "JobNotFoundError"


def test_monitor_prints_snapshots(capsys, config, will_csv):
    _submit(capsys, config, will_csv)

    cli_main.main(["--config", str(config), "monitor", "--ticks", "2", "--interval", "0"])

    lines = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
    assert len(lines) == 2
    assert lines[0]["active_count"] == 1
    assert lines[0]["preview"][0]["file_name"] == "firm_upload.csv"


def test_data_root_from_environment(capsys, config, will_csv, tmp_path, monkeypatch):
    monkeypatch.setenv("WILLBATCH_DATA_ROOT", str(tmp_path / "elsewhere"))

    _submit(capsys, config, will_csv)

    assert (tmp_path / "elsewhere" / "jobs.json").exists()


def test_run_reports_unknown_id_without_stopping_the_others(capsys, config, will_csv):
    job = _submit(capsys, config, will_csv)
    assert job["status"] == "queued"

    with pytest.raises(SystemExit) as excinfo:
        cli_main.main(["--config", str(config), "run", job["id"], "JOB_999"])

    assert excinfo.value.code == 1
    results = json.loads(capsys.readouterr().out)
    assert results[0]["id"] == job["id"]
    assert results[0]["status"] == "complete"
    assert results[1] == {"id": "JOB_999", "error": results[1]["error"], "kind": "JobNotFoundError"}

    detail = _run(capsys, "--config", str(config), "show", job["id"])
    assert detail["status"] == "complete"
    assert detail["successful_records"] == 2
