import stat

import pytest

from binupdates.utils.schedule import register_cron, render_cron_entry


def test_render_entry():
    body = render_cron_entry("ytdlp", "30 3 * * 0", python="/usr/bin/python3", log_dir="/var/log")

    lines = body.splitlines()
    assert lines[0].startswith("#")
    assert "SHELL=/bin/sh" in lines
    assert lines[-1] == ("30 3 * * 0 root /usr/bin/python3 -m binupdates.index --module ytdlp "
                         ">> /var/log/binupdates-ytdlp.log 2>&1")


@pytest.mark.parametrize("schedule", ["", "* * * *", "0 4 * * * *", "@daily"])
def test_render_rejects_bad_schedule(schedule):
    with pytest.raises(ValueError):
        render_cron_entry("ytdlp", schedule)


def test_register_writes_file(tmp_path):
    path = register_cron("filebrowser", "15 4 * * *", cron_dir=str(tmp_path), python="/usr/bin/python3")

    assert path == tmp_path / "binupdates-filebrowser"
    assert stat.S_IMODE(path.stat().st_mode) == 0o644
    assert "15 4 * * * root /usr/bin/python3" in path.read_text()
    assert [p.name for p in tmp_path.iterdir()] == ["binupdates-filebrowser"]


def test_register_overwrites(tmp_path):
    register_cron("filebrowser", "15 4 * * *", cron_dir=str(tmp_path))
    path = register_cron("filebrowser", "0 5 * * 1", cron_dir=str(tmp_path))

    assert path.read_text().splitlines()[-1].startswith("0 5 * * 1 root ")
