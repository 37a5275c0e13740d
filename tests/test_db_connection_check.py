import db_connection_check


def test_check_creates_tables_on_a_fresh_database(tmp_path, capsys) -> None:
    url = f"sqlite:///{tmp_path / 'depot.db'}"

    assert db_connection_check.check(url, create_tables=True) is True

    out = capsys.readouterr().out
    assert "DB connection OK" in out
    assert "cylinder_movement" in out
    assert "daily_count_item" in out


def test_main_returns_nonzero_when_the_database_is_unreachable(tmp_path) -> None:
    missing = tmp_path / "no-such-dir" / "depot.db"
    assert db_connection_check.main(["--database-url", f"sqlite:///{missing}"]) == 1


def test_main_returns_zero_on_success(tmp_path) -> None:
    url = f"sqlite:///{tmp_path / 'depot.db'}"
    assert db_connection_check.main(["--database-url", url, "--create-tables"]) == 0
