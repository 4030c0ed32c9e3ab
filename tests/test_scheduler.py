from datetime import datetime
from pathlib import Path

import pytest

import mvwdl
from conftest import make_item


class StopServing(Exception):
    pass


def stop_after(count, sleeps):
    def fake_sleep(seconds):
        sleeps.append(seconds)
        if len(sleeps) >= count:
            raise StopServing

    return fake_sleep


def at_hour(hour):
    return lambda: datetime(2024, 3, 1, hour, 30)


@pytest.mark.parametrize(
    "hours, hour, expected",
    [
        (set(), 14, True),
        ({9, 10}, 9, True),
        ({9, 10}, 10, True),
        ({9, 10}, 14, False),
        ({0}, 23, False),
    ],
)
def test_in_operational_hours(hours, hour, expected):
    assert mvwdl.in_operational_hours(hours, at_hour(hour)()) is expected


def test_serve_sleeps_outside_operational_hours(web, make_context):
    web.add_feed("Tagesschau", make_item("Tagesschau", 1500))
    ctx = make_context(server=True, hours={9, 10}, interval=300)
    sleeps = []

    with pytest.raises(StopServing):
        mvwdl.serve(ctx, now=at_hour(14), sleep=stop_after(3, sleeps))

    assert sleeps == [60, 60, 60]
    assert web.calls == []


def test_serve_runs_cycles_and_waits_interval(web, make_context):
    web.add_feed("Tagesschau", make_item("Tagesschau", 1500, ["https://cdn.example.com/ts.mp4"]))
    web.files["https://cdn.example.com/ts.mp4"] = b"ts"
    ctx = make_context(server=True, hours={9, 10}, interval=300)
    sleeps = []

    with pytest.raises(StopServing):
        mvwdl.serve(ctx, now=at_hour(9), sleep=stop_after(2, sleeps))

    assert sleeps == [300, 300]
    assert web.calls.count(ctx.config.feed_urls[0]) == 2
    assert web.file_calls() == ["https://cdn.example.com/ts.mp4"]
    assert ctx.history.entries == ["https://cdn.example.com/ts.mp4"]


def test_serve_does_not_redownload_when_history_is_off(web, make_context):
    web.add_feed("Tagesschau", make_item("Tagesschau", 1500, ["https://cdn.example.com/ts.mp4"]))
    web.files["https://cdn.example.com/ts.mp4"] = b"ts"
    ctx = make_context(server=True, tracking=False, interval=1)

    with pytest.raises(StopServing):
        mvwdl.serve(ctx, now=at_hour(3), sleep=stop_after(3, []))

    assert web.file_calls() == ["https://cdn.example.com/ts.mp4"]


def test_run_cycle_in_list_mode_downloads_nothing(web, make_context, capsys):
    web.add_feed("Tagesschau", make_item("Tagesschau", 1500))
    ctx = make_context()

    assert mvwdl.run_cycle(ctx) == []
    assert capsys.readouterr().out == "Tagesschau | 25 mins\n"
    assert web.file_calls() == []


def test_run_cycle_issues_one_request_for_duplicate_items(web, make_context, capsys):
    item = make_item("Tagesschau", 1500, ["https://cdn.example.com/ts.mp4"])
    web.add_feed("Tagesschau", item, item)
    web.files["https://cdn.example.com/ts.mp4"] = b"ts"
    ctx = make_context(download=True)

    results = mvwdl.run_cycle(ctx)

    assert len(results) == 1
    assert web.file_calls() == ["https://cdn.example.com/ts.mp4"]
    assert "1 downloaded, 0 failed" in capsys.readouterr().out


def test_first_download_creates_history_file(web, make_context):
    web.add_feed("Tagesschau", make_item("Tagesschau", 1500, ["https://cdn.example.com/ts.mp4"]))
    web.files["https://cdn.example.com/ts.mp4"] = b"ts"
    ctx = make_context(download=True)
    history_path = Path(ctx.config.history_file)
    assert not history_path.exists()
    assert len(ctx.history) == 0

    mvwdl.run_cycle(ctx)

    assert history_path.read_text(encoding="utf-8") == "https://cdn.example.com/ts.mp4\n"


def test_history_carries_over_to_the_next_run(web, make_context, capsys):
    web.add_feed("Tagesschau", make_item("Tagesschau", 1500, ["https://cdn.example.com/ts.mp4"]))
    web.files["https://cdn.example.com/ts.mp4"] = b"ts"
    mvwdl.run_cycle(make_context(download=True))
    capsys.readouterr()

    next_run = make_context(download=True)
    assert mvwdl.run_cycle(next_run) == []
    assert "Already downloaded: Tagesschau" in capsys.readouterr().out

    untracked_run = make_context(download=True, tracking=False)
    assert len(mvwdl.run_cycle(untracked_run)) == 1
    assert web.file_calls() == ["https://cdn.example.com/ts.mp4"] * 2
