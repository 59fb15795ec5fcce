from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Optional

import uvicorn
from rich.console import Console
from rich.table import Table

from .api import create_app
from .domain.models import Column, Placement
from .engine.scheduler import Scheduler, create_scheduler
from .errors import EngineError
from .storage.bootstrap import seed_default_columns


def _resolve_project_dir(project_dir: Optional[str]) -> Path:
    return Path(project_dir).expanduser().resolve() if project_dir else Path.cwd().resolve()


def _ctx(project_dir: Optional[str]) -> Scheduler:
    scheduler = create_scheduler(_resolve_project_dir(project_dir))
    seed_default_columns(scheduler.container.columns)
    scheduler.restore_gate()
    return scheduler


def _placement(args: argparse.Namespace) -> Placement:
    return Placement(before_task_id=args.before, after_task_id=args.after, at_start=args.at_start)


def _write(payload: dict) -> None:
    sys.stdout.write(json.dumps(payload, indent=2) + '\n')


def _task_create(args: argparse.Namespace) -> int:
    scheduler = _ctx(args.project_dir)
    try:
        task = scheduler.create_task(
            args.title,
            column_id=args.column,
            description=args.description or '',
            placement=_placement(args),
            parent_task_id=args.parent,
        )
    except (EngineError, ValueError) as exc:
        sys.stderr.write(str(exc) + '\n')
        return 1
    scheduler.shutdown()
    _write({'task': scheduler.get_task(task.id).to_dict()})
    return 0


def _task_list(args: argparse.Namespace) -> int:
    scheduler = _ctx(args.project_dir)
    try:
        tasks = scheduler.list_tasks(args.column)
    except EngineError as exc:
        sys.stderr.write(str(exc) + '\n')
        return 1
    if args.json:
        _write({'tasks': [task.to_dict() for task in tasks]})
        return 0
    names = {column.id: column.name for column in scheduler.list_columns()}
    table = Table(title='Tasks', show_header=True)
    table.add_column('Task ID', style='cyan')
    table.add_column('Title')
    table.add_column('Column')
    table.add_column('Position', justify='right')
    table.add_column('Status', style='bold')
    table.add_column('Error', style='red')
    for task in tasks:
        table.add_row(
            task.id,
            task.title[:50],
            names.get(task.column_id, task.column_id),
            task.position,
            task.agent_status,
            (task.error_message or '')[:50],
        )
    Console().print(table)
    return 0


def _task_move(args: argparse.Namespace) -> int:
    scheduler = _ctx(args.project_dir)
    try:
        task = scheduler.move_task(args.task_id, args.column, _placement(args))
    except EngineError as exc:
        sys.stderr.write(str(exc) + '\n')
        return 1
    scheduler.shutdown()
    _write({'task': scheduler.get_task(task.id).to_dict()})
    return 0


def _column_list(args: argparse.Namespace) -> int:
    scheduler = _ctx(args.project_dir)
    columns = [(column, scheduler.column_status(column.id)) for column in scheduler.list_columns()]
    if args.json:
        _write({'columns': [{**column.to_dict(), 'gate': gate} for column, gate in columns]})
        return 0
    table = Table(title='Columns', show_header=True)
    table.add_column('Column ID', style='cyan')
    table.add_column('Name', style='bold')
    table.add_column('Limit', justify='right')
    table.add_column('Running', justify='right')
    table.add_column('Queued', justify='right')
    table.add_column('Hooks', justify='right')
    for column, gate in columns:
        table.add_row(
            column.id,
            column.name,
            str(column.max_concurrent_tasks) if column.limited else '-',
            str(gate['running_count']),
            str(gate['queue_length']),
            str(len(column.hooks)) if column.hooks_enabled else 'off',
        )
    Console().print(table)
    return 0


def _column_add(args: argparse.Namespace) -> int:
    scheduler = _ctx(args.project_dir)
    existing = scheduler.list_columns()
    position = args.position if args.position is not None else (max((c.position for c in existing), default=-1) + 1)
    column = Column(
        name=args.name,
        position=position,
        max_concurrent_tasks=args.max_concurrent if args.max_concurrent and args.max_concurrent > 0 else None,
        starts_executor=args.starts_executor,
        hooks_enabled=not args.no_hooks,
    )
    scheduler.add_column(column)
    _write({'column': column.to_dict()})
    return 0


def _server(args: argparse.Namespace) -> int:
    app = create_app(project_dir=_resolve_project_dir(args.project_dir))
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


def _add_placement_args(parser: argparse.ArgumentParser) -> None:
    group = parser.add_mutually_exclusive_group()
    group.add_argument('--before', default=None, help='Place before this task id')
    group.add_argument('--after', default=None, help='Place after this task id')
    group.add_argument('--at-start', action='store_true', help='Place at the top of the column')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Kanban task orchestrator')
    parser.add_argument('--project-dir', default=None, help='Target project directory (default: current working directory)')
    subparsers = parser.add_subparsers(dest='command', required=True)

    server = subparsers.add_parser('server', help='Start the web server')
    server.add_argument('--host', default='127.0.0.1')
    server.add_argument('--port', default=8000, type=int)
    server.set_defaults(func=_server)

    task = subparsers.add_parser('task', help='Manage tasks')
    task_sub = task.add_subparsers(dest='task_cmd', required=True)
    tcreate = task_sub.add_parser('create', help='Create a task')
    tcreate.add_argument('title')
    tcreate.add_argument('--description', default='')
    tcreate.add_argument('--column', default=None, help='Column id (default: entry column)')
    tcreate.add_argument('--parent', default=None, help='Parent task id')
    _add_placement_args(tcreate)
    tcreate.set_defaults(func=_task_create)
    tlist = task_sub.add_parser('list', help='List tasks')
    tlist.add_argument('--column', default=None)
    tlist.add_argument('--json', action='store_true')
    tlist.set_defaults(func=_task_list)
    tmove = task_sub.add_parser('move', help='Move a task to a column')
    tmove.add_argument('task_id')
    tmove.add_argument('column')
    _add_placement_args(tmove)
    tmove.set_defaults(func=_task_move)

    column = subparsers.add_parser('column', help='Manage columns')
    column_sub = column.add_subparsers(dest='column_cmd', required=True)
    clist = column_sub.add_parser('list', help='List columns with gate status')
    clist.add_argument('--json', action='store_true')
    clist.set_defaults(func=_column_list)
    cadd = column_sub.add_parser('add', help='Add a column')
    cadd.add_argument('name')
    cadd.add_argument('--position', default=None, type=int)
    cadd.add_argument('--max-concurrent', default=None, type=int)
    cadd.add_argument('--starts-executor', action='store_true')
    cadd.add_argument('--no-hooks', action='store_true')
    cadd.set_defaults(func=_column_add)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, 'func', None)
    if handler is None:
        parser.print_help()
        return 1
    return int(handler(args) or 0)
