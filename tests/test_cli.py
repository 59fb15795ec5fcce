from __future__ import annotations

import json
from pathlib import Path

from kanban_orchestrator.cli import main


def _json(capsys) -> dict:
    return json.loads(capsys.readouterr().out)


def test_task_create_list_and_move(tmp_path: Path, capsys) -> None:
    assert main(['--project-dir', str(tmp_path), 'column', 'list', '--json']) == 0
    columns = {column['name']: column for column in _json(capsys)['columns']}
    assert columns['In Progress']['gate']['running_count'] == 0

    assert main(['--project-dir', str(tmp_path), 'task', 'create', 'CLI Task', '--description', 'from the shell']) == 0
    first = _json(capsys)['task']
    assert first['column_id'] == columns['TODO']['id']

    assert main(['--project-dir', str(tmp_path), 'task', 'create', 'Top', '--at-start']) == 0
    top = _json(capsys)['task']

    assert main(['--project-dir', str(tmp_path), 'task', 'list', '--column', columns['TODO']['id'], '--json']) == 0
    assert [task['id'] for task in _json(capsys)['tasks']] == [top['id'], first['id']]

    assert main(['--project-dir', str(tmp_path), 'task', 'move', first['id'], columns['In Progress']['id']]) == 0
    moved = _json(capsys)['task']
    assert moved['column_id'] == columns['In Progress']['id']
    assert moved['agent_status'] == 'executing'


def test_table_output_and_column_add(tmp_path: Path, capsys) -> None:
    assert main(['--project-dir', str(tmp_path), 'column', 'add', 'QA', '--max-concurrent', '2', '--no-hooks']) == 0
    column = _json(capsys)['column']
    assert column['max_concurrent_tasks'] == 2
    assert column['hooks_enabled'] is False
    assert column['position'] == 5

    assert main(['--project-dir', str(tmp_path), 'column', 'list']) == 0
    assert 'QA' in capsys.readouterr().out

    assert main(['--project-dir', str(tmp_path), 'task', 'list']) == 0
    capsys.readouterr()


def test_errors_return_non_zero(tmp_path: Path, capsys) -> None:
    assert main(['--project-dir', str(tmp_path), 'task', 'move', 'task-missing', 'column-missing']) == 1
    assert 'not found' in capsys.readouterr().err
    assert main(['--project-dir', str(tmp_path), 'task', 'list', '--column', 'column-missing']) == 1
