import subprocess
import sys


def test_app_help_runs():
    proc = subprocess.run(
        [sys.executable, "-m", "salon_queue.app", "-h"],
        capture_output=True,
        text=True,
        check=False,
    )
    assert proc.returncode == 0
    out = proc.stdout + proc.stderr
    assert "main entrypoint" in out
    assert "serve" in out
    assert "check-in" in out
    assert "watch" in out


def test_check_in_help_runs():
    proc = subprocess.run(
        [sys.executable, "-m", "salon_queue.app", "check-in", "-h"],
        capture_output=True,
        text=True,
        check=False,
    )
    assert proc.returncode == 0
    out = proc.stdout + proc.stderr
    assert "--entry-id" in out
    assert "--accuracy" in out
    assert "--token" in out


def test_notify_help_offers_minutes():
    proc = subprocess.run(
        [sys.executable, "-m", "salon_queue.app", "notify", "-h"],
        capture_output=True,
        text=True,
        check=False,
    )
    assert proc.returncode == 0
    assert "--minutes" in proc.stdout + proc.stderr


def test_reputation_and_attempts_are_listed():
    proc = subprocess.run(
        [sys.executable, "-m", "salon_queue.app", "-h"],
        capture_output=True,
        text=True,
        check=False,
    )
    out = proc.stdout + proc.stderr
    assert "reputation" in out
    assert "attempts" in out
