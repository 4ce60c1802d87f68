from datetime import timedelta

import pytest

from batchrunner.core.core_errors import RequestValidationError, SchedulingFailure
from batchrunner.core.core_request import (
    ExportEnv,
    NotifyEvent,
    build_resource_request,
    expand_template,
    render_directives,
)
from batchrunner.core.core_utils import format_wall_clock, parse_wall_clock


def base_resources(**changes):
    raw = {
        "nodes": 1,
        "cores": 128,
        "wall_clock": "0-12:00:00",
        "partition": "general",
        "qos": "public",
        "notify_events": ["ALL"],
        "notify_recipient": "%u@asu.edu",
        "stdout": "slurm.%j.out",
        "stderr": "slurm.%j.err",
        "export_env": "NONE",
    }
    raw.update(changes)
    return raw


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("0-12:00:00", timedelta(hours=12)),
        ("0-02:00:00", timedelta(hours=2)),
        ("1-00", timedelta(days=1)),
        ("2-03:30", timedelta(days=2, hours=3, minutes=30)),
        ("01:02:03", timedelta(hours=1, minutes=2, seconds=3)),
        ("45", timedelta(minutes=45)),
        ("10:30", timedelta(minutes=10, seconds=30)),
        (90, timedelta(minutes=90)),
    ],
)
def test_parse_wall_clock_slurm_formats(raw, expected):
    assert parse_wall_clock(raw) == expected


def test_parse_wall_clock_rejects_garbage():
    with pytest.raises(ValueError):
        parse_wall_clock("twelve hours")


def test_format_wall_clock():
    assert format_wall_clock(timedelta(hours=12)) == "0-12:00:00"
    assert format_wall_clock(timedelta(days=1, minutes=5, seconds=7)) == "1-00:05:07"


def test_build_request_from_discovery_directives():
    request = build_resource_request(base_resources())

    assert request.node_count == 1
    assert request.core_count == 128
    assert request.wall_clock_limit == timedelta(hours=12)
    assert request.export_env == ExportEnv.NONE
    assert request.notifies(NotifyEvent.BEGIN)
    assert request.notifies(NotifyEvent.FAIL)


@pytest.mark.parametrize(
    "changes",
    [
        {"nodes": 0},
        {"cores": -4},
        {"cores": "many"},
        {"wall_clock": "0"},
        {"wall_clock": "0-00:00:00"},
        {"stdout": "slurm.out"},
        {"stderr": "slurm.%j.%j.err"},
        {"notify_events": ["SOMETIMES"]},
        {"export_env": "SOME"},
    ],
)
def test_invalid_requests_are_rejected(changes):
    with pytest.raises(RequestValidationError):
        build_resource_request(base_resources(**changes))


def test_validation_error_is_a_scheduling_failure():
    with pytest.raises(SchedulingFailure):
        build_resource_request(base_resources(nodes=0))


def test_output_paths_share_the_job_id():
    request = build_resource_request(base_resources())
    out, err = request.output_paths("4242")
    assert out.name == "slurm.4242.out"
    assert err.name == "slurm.4242.err"


def test_distinct_job_ids_never_collide():
    request = build_resource_request(base_resources())
    first = set(request.output_paths("100"))
    second = set(request.output_paths("101"))
    assert not first & second


def test_expand_template_requires_job_id():
    with pytest.raises(ValueError):
        expand_template("slurm.%j.out", "")


def test_selected_events_only():
    request = build_resource_request(base_resources(notify_events="END,FAIL"))
    assert not request.notifies(NotifyEvent.BEGIN)
    assert request.notifies(NotifyEvent.END)


def test_render_directives_matches_job_script_block():
    request = build_resource_request(base_resources(job_name="discovery"))
    lines = render_directives(request)

    assert lines[0] == "#SBATCH -J discovery"
    assert "#SBATCH -N 1" in lines
    assert "#SBATCH -c 128" in lines
    assert "#SBATCH -t 0-12:00:00" in lines
    assert "#SBATCH -p general" in lines
    assert "#SBATCH -q public" in lines
    assert "#SBATCH -o slurm.%j.out" in lines
    assert "#SBATCH -e slurm.%j.err" in lines
    assert "#SBATCH --mail-type=ALL" in lines
    assert '#SBATCH --mail-user="%u@asu.edu"' in lines
    assert lines[-1] == "#SBATCH --export=NONE"


def test_render_directives_without_notifications():
    request = build_resource_request(
        base_resources(notify_events=[], notify_recipient="", export_env="INHERIT")
    )
    lines = render_directives(request)
    assert not any("--mail" in line for line in lines)
    assert lines[-1] == "#SBATCH --export=ALL"
