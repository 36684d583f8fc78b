from __future__ import annotations

import argparse
import json
import sys

import httpx

_STATUSES = ['pending', 'running', 'completed', 'failed', 'cancelled']


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='medai-tasks', description='Operate the medical AI task engine')
    parser.add_argument('--api-base', default='http://127.0.0.1:8000', help='Task engine API base URL')

    sub = parser.add_subparsers(dest='command', required=True)

    enqueue = sub.add_parser('enqueue', help='Create a task for a paid order')
    enqueue.add_argument('--order', required=True, help='Order id')
    enqueue.add_argument('--service', required=True, help='AI service id')
    enqueue.add_argument('--input', action='append', default=[], help='Input field in key=value format (repeatable)')
    enqueue.add_argument('--input-json', default='', help='Full input payload as a JSON object')

    status = sub.add_parser('status', help='Get task status')
    status.add_argument('task_id', help='Task id')

    tasks = sub.add_parser('tasks', help='List tasks')
    tasks.add_argument('--order', default='', help='Filter by order id')
    tasks.add_argument('--service', default='', help='Filter by service id')
    tasks.add_argument('--status', default='', choices=['', *_STATUSES], help='Filter by status')
    tasks.add_argument('--page', type=int, default=1)
    tasks.add_argument('--limit', type=int, default=20)

    stats = sub.add_parser('stats', help='Show aggregated stats')
    stats.add_argument('--service', default='', help='Filter by service id')

    retry = sub.add_parser('retry', help='Retry a failed task')
    retry.add_argument('task_id', help='Task id')

    cancel = sub.add_parser('cancel', help='Cancel a pending or running task')
    cancel.add_argument('task_id', help='Task id')

    events = sub.add_parser('events', help='List task lifecycle events')
    events.add_argument('task_id', help='Task id')

    archive = sub.add_parser('archive', help='Hide a finished task from listings')
    archive.add_argument('task_id', help='Task id')

    sub.add_parser('health', help='Show engine health')
    return parser


def _print_json(payload) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _parse_inputs(pairs: list[str], raw_json: str) -> dict[str, object]:
    out: dict[str, object] = {}
    text = str(raw_json or '').strip()
    if text:
        try:
            parsed = json.loads(text)
        except ValueError as exc:
            raise ValueError(f'invalid --input-json: {exc}') from exc
        if not isinstance(parsed, dict):
            raise ValueError('--input-json must be a JSON object')
        out.update(parsed)
    for raw in pairs:
        item = str(raw or '').strip()
        if not item:
            continue
        if '=' not in item:
            raise ValueError(f'invalid --input value: {item}')
        key, value = item.split('=', 1)
        key = key.strip()
        if not key:
            raise ValueError(f'invalid --input value: {item}')
        out[key] = value.strip()
    return out


def _clean_params(params: dict[str, object]) -> dict[str, object]:
    return {k: v for k, v in params.items() if v not in ('', None)}


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    base = args.api_base.rstrip('/')

    with httpx.Client(timeout=60) as client:
        if args.command == 'enqueue':
            try:
                inputs = _parse_inputs(args.input, args.input_json)
            except ValueError as exc:
                parser.error(str(exc))
                return 2
            response = client.post(
                f'{base}/api/tasks',
                json={
                    'order_id': args.order,
                    'service_id': args.service,
                    'input_data': inputs or None,
                },
            )
        elif args.command == 'status':
            response = client.get(f'{base}/api/tasks/{args.task_id}')
        elif args.command == 'tasks':
            response = client.get(
                f'{base}/api/tasks',
                params=_clean_params(
                    {
                        'order_id': args.order,
                        'service_id': args.service,
                        'status': args.status,
                        'page': int(args.page),
                        'limit': int(args.limit),
                    }
                ),
            )
        elif args.command == 'stats':
            response = client.get(f'{base}/api/stats', params=_clean_params({'service_id': args.service}))
        elif args.command == 'retry':
            response = client.post(f'{base}/api/tasks/retry', json={'task_id': args.task_id})
        elif args.command == 'cancel':
            response = client.post(f'{base}/api/tasks/cancel', json={'task_id': args.task_id})
        elif args.command == 'events':
            response = client.get(f'{base}/api/tasks/{args.task_id}/events')
        elif args.command == 'archive':
            response = client.delete(f'{base}/api/tasks/{args.task_id}')
        elif args.command == 'health':
            response = client.get(f'{base}/api/health')
        else:
            parser.error(f'unsupported command: {args.command}')
            return 2

    if response.status_code >= 400:
        print(f'HTTP {response.status_code}: {response.text}', file=sys.stderr)
        return 1

    _print_json(response.json())
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
