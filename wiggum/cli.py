#!/usr/bin/env python3
"""wiggum CLI entrypoint."""

import argparse
import logging
import os
import sys
from pathlib import Path

from wiggum.hooks import HookContext, HookDispatcher
from wiggum.lib.config import (
    ProjectNotFound,
    find_project_root,
    load_config,
    write_default_config,
)
from wiggum.lib.constants import (
    WIGGUM_DIR_NAME,
    HOOKS_DIR_NAME,
    ORIGIN_DIR_NAME,
    REPLICA_DIR_NAME,
    TICKET_TYPES_FILE,
    EXIT_OK,
    EXIT_ERROR,
    EXIT_INVALID_ARGS,
    EXIT_TICKET_NOT_FOUND,
    EXIT_INVALID_TRANSITION,
    EXIT_SYNC_FAILED,
    EXIT_HOOK_VETOED,
)
from wiggum.lib.errors import (
    AmbiguousId,
    ConfigurationInvalid,
    HookVetoed,
    InvalidField,
    InvalidTransition,
    NotFound,
    SyncError,
    TicketError,
)
from wiggum.store import clone_replica, init_origin, open_replica
from wiggum.tickets.merge import merge_ticket_documents
from wiggum.tickets.service import TicketService
from wiggum.workflow import PolicyEngine, write_default_policy

logger = logging.getLogger("wiggum")

# Most specific first
EXIT_CODES = (
    (NotFound, EXIT_TICKET_NOT_FOUND),
    (AmbiguousId, EXIT_INVALID_ARGS),
    (InvalidField, EXIT_INVALID_ARGS),
    (ConfigurationInvalid, EXIT_INVALID_ARGS),
    (InvalidTransition, EXIT_INVALID_TRANSITION),
    (SyncError, EXIT_SYNC_FAILED),
    (HookVetoed, EXIT_HOOK_VETOED),
)


def exit_code_for(error: TicketError) -> int:
    for error_cls, code in EXIT_CODES:
        if isinstance(error, error_cls):
            return code
    return EXIT_ERROR


def configure_logging(verbose: bool = False, quiet: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.WARNING if quiet else logging.INFO
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    logger.handlers[:] = [handler]
    logger.setLevel(level)
    logger.propagate = False


def get_config():
    """Locate the project and load its settings."""
    return load_config(find_project_root())


def build_service(config) -> TicketService:
    policy = PolicyEngine(config.ticket_types_path)
    replica = open_replica(config.tickets_dir, config.branch, reconcile=merge_ticket_documents)
    hooks = HookDispatcher(
        config.hooks_dir,
        timeout=config.hook_timeout,
        log_path=config.hook_log_path,
    )
    return TicketService(
        replica,
        policy,
        hooks=hooks,
        agent_id=config.agent_id,
        session=config.session,
        auto_sync=config.auto_sync,
        project_root=config.project_root,
    )


# Project setup

def cmd_init(args):
    root = Path(os.environ.get("WIGGUM_PROJECT_ROOT") or Path.cwd())
    wiggum_dir = root / WIGGUM_DIR_NAME
    (wiggum_dir / HOOKS_DIR_NAME).mkdir(parents=True, exist_ok=True)
    write_default_config(root)
    policy_path = wiggum_dir / TICKET_TYPES_FILE
    write_default_policy(policy_path)

    branch = load_config(root).branch
    origin_dir = wiggum_dir / ORIGIN_DIR_NAME
    init_origin(origin_dir, branch, policy_path=policy_path, validate_pushes=args.validate_pushes)

    replica_dir = wiggum_dir / REPLICA_DIR_NAME
    if not (replica_dir / ".git").exists():
        clone_replica(origin_dir, replica_dir, branch)

    print(f"Initialized wiggum project in {wiggum_dir}")
    return EXIT_OK


def cmd_clone(args):
    config = get_config()
    dest = Path(args.dest).resolve()
    clone_replica(config.origin_dir, dest, config.branch)
    print(f"Cloned tickets into {dest}")
    print(f"Use it with: export WIGGUM_TICKETS_DIR={dest}")
    return EXIT_OK


# Tickets

def cmd_ticket_create(args):
    service = build_service(get_config())
    deps = []
    for value in args.dep or []:
        deps.extend(v for v in value.replace(",", " ").split() if v)
    ticket_id = service.create(
        args.title,
        type=args.type,
        priority=args.priority,
        depends_on=deps,
        description=args.description or "",
        acceptance_criteria=args.criterion or [],
    )
    print(ticket_id)
    return EXIT_OK


def cmd_ticket_list(args):
    service = build_service(get_config())
    for ticket in service.list_tickets(state=args.state, type=args.type):
        assignee = f" @{ticket.assigned_agent_id}" if ticket.assigned_agent_id else ""
        print(f"{ticket.id}  {ticket.state:<12} {ticket.type:<8} P{ticket.priority}  {ticket.title}{assignee}")
    return EXIT_OK


def cmd_ticket_show(args):
    service = build_service(get_config())
    print(service.read_raw(args.id), end="")
    return EXIT_OK


def cmd_ticket_ready(args):
    service = build_service(get_config())
    for ticket_id in service.ready(limit=args.limit):
        print(ticket_id)
    return EXIT_OK


def cmd_ticket_blocked(args):
    service = build_service(get_config())
    for ticket_id, unmet in service.blocked():
        print(f"{ticket_id}  blocked by: {', '.join(unmet)}")
    return EXIT_OK


def _print_tree(node, depth=0):
    indent = "  " * depth
    if node.missing:
        print(f"{indent}{node.id} (missing)")
        return
    suffix = " (cycle)" if node.cycle else ""
    print(f"{indent}{node.id} [{node.state}] {node.title}{suffix}")
    for child in node.children:
        _print_tree(child, depth + 1)


def cmd_ticket_tree(args):
    service = build_service(get_config())
    _print_tree(service.tree(args.id))
    return EXIT_OK


def cmd_ticket_transition(args):
    service = build_service(get_config())
    result = service.transition(args.id, args.state, run_hooks=not args.no_hooks, sync=not args.no_sync)
    print(f"{result.ticket_id}: {result.from_state} -> {result.to_state}")
    service.wait_for_hooks()
    return EXIT_OK


def cmd_ticket_assign(args):
    service = build_service(get_config())
    ticket = service.assign(args.id, args.agent)
    print(f"{ticket.id} assigned to {ticket.assigned_agent_id}")
    return EXIT_OK


def cmd_ticket_unassign(args):
    service = build_service(get_config())
    ticket = service.unassign(args.id)
    print(f"{ticket.id} unassigned")
    return EXIT_OK


def cmd_ticket_comment(args):
    service = build_service(get_config())
    ticket = service.append_comment(args.id, args.text, author=args.author)
    print(f"{ticket.id}: comment added ({len(ticket.comments)} total)")
    return EXIT_OK


def cmd_ticket_set(args):
    service = build_service(get_config())
    ticket = service.set_field(args.id, args.key, args.value)
    print(f"{ticket.id}: {args.key} updated")
    return EXIT_OK


def cmd_ticket_history(args):
    service = build_service(get_config())
    for revision in service.history(args.id):
        print(f"{revision.sha[:8]}  {revision.timestamp}  {revision.message}")
    return EXIT_OK


def cmd_ticket_sync(args):
    service = build_service(get_config())
    mode = "pull" if args.pull else "push" if args.push else "both"
    service.sync(mode)
    print(f"Sync ({mode}) complete")
    return EXIT_OK


# Hooks

def cmd_hook_run(args):
    config = get_config()
    service = build_service(config)
    ticket = service.read(args.ticket)
    ctx = HookContext(
        ticket_id=ticket.id,
        ticket_path=service.replica.ticket_path(ticket.id),
        ticket_content=service.replica.read(ticket.id),
        prev_state=os.environ.get("WIGGUM_PREV_STATE", ""),
        new_state=os.environ.get("WIGGUM_NEW_STATE", ticket.state),
        agent_id=ticket.assigned_agent_id or config.agent_id,
        session=config.session,
        project_root=config.project_root,
    )
    result = service.hooks.run_hook(args.name, ctx, timeout=config.hook_timeout)
    if result is None:
        print(f"No hook found: {args.name}")
        return EXIT_OK
    sys.stdout.write(result.stdout)
    sys.stderr.write(result.stderr)
    if not result.success:
        print(f"ERROR: Hook {args.name} failed (exit {result.returncode})")
        return EXIT_ERROR
    return EXIT_OK


def cmd_hook_list(args):
    config = get_config()
    dispatcher = HookDispatcher(config.hooks_dir)
    listing = dispatcher.list_hooks()

    print(f"Project hooks ({config.hooks_dir}):")
    for name, active in listing["project"]:
        print(f"  {name} ({'active' if active else 'inactive'})")
    print("")
    print("Default hooks:")
    for name, active in listing["default"]:
        print(f"  {name} ({'active' if active else 'inactive'})")
    return EXIT_OK


def run_command(args) -> int:
    """Run the selected command, mapping failures to exit codes."""
    try:
        return args.func(args)
    except ProjectNotFound as e:
        print(f"ERROR: {e}")
        return EXIT_INVALID_ARGS
    except ValueError as e:
        # Malformed config.env
        print(f"ERROR: {e}")
        return EXIT_INVALID_ARGS
    except TicketError as e:
        print(f"ERROR: {e}")
        return exit_code_for(e)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='wiggum', description='Shared ticket queue for concurrent agents')
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    verbosity.add_argument('--quiet', '-q', action='store_true', help='Only warnings and errors')
    subparsers = parser.add_subparsers(dest='command', required=True)

    # wiggum init
    p_init = subparsers.add_parser('init', help='Create .wiggum/ with a tickets origin and clone')
    p_init.add_argument('--validate-pushes', action='store_true',
                        help='Install an origin hook that rejects invalid ticket pushes')
    p_init.set_defaults(func=cmd_init)

    # wiggum clone
    p_clone = subparsers.add_parser('clone', help='Clone the tickets origin for an agent worktree')
    p_clone.add_argument('dest', help='Directory for the new replica')
    p_clone.set_defaults(func=cmd_clone)

    # wiggum ticket
    p_ticket = subparsers.add_parser('ticket', help='Ticket operations')
    ticket_sub = p_ticket.add_subparsers(dest='ticket_cmd', required=True)

    p_create = ticket_sub.add_parser('create', help='Create a ticket')
    p_create.add_argument('title', help='Ticket title')
    p_create.add_argument('--type', '-t', help='Ticket type (default from ticket_types.json)')
    p_create.add_argument('--priority', '-p', type=int, default=2, help='Priority, lower is more urgent')
    p_create.add_argument('--dep', '-d', action='append', help='Dependency id (repeatable or comma-separated)')
    p_create.add_argument('--description', help='Description text')
    p_create.add_argument('--criterion', '-c', action='append', help='Acceptance criterion (repeatable)')
    p_create.set_defaults(func=cmd_ticket_create)

    p_list = ticket_sub.add_parser('list', help='List tickets')
    p_list.add_argument('--state', '-s', help='Only tickets in this state')
    p_list.add_argument('--type', '-t', help='Only tickets of this type')
    p_list.set_defaults(func=cmd_ticket_list)

    p_show = ticket_sub.add_parser('show', help='Print a ticket document')
    p_show.add_argument('id', help='Ticket id (unique partial ids accepted)')
    p_show.set_defaults(func=cmd_ticket_show)

    p_ready = ticket_sub.add_parser('ready', help='Tickets ready to work on')
    p_ready.add_argument('--limit', '-n', type=int, help='Maximum number of ids')
    p_ready.set_defaults(func=cmd_ticket_ready)

    p_blocked = ticket_sub.add_parser('blocked', help='Ready-state tickets waiting on dependencies')
    p_blocked.set_defaults(func=cmd_ticket_blocked)

    p_tree = ticket_sub.add_parser('tree', help='Show dependency tree')
    p_tree.add_argument('id', help='Root ticket id')
    p_tree.set_defaults(func=cmd_ticket_tree)

    p_transition = ticket_sub.add_parser('transition', help='Move a ticket to a new state')
    p_transition.add_argument('id', help='Ticket id')
    p_transition.add_argument('state', help='Target state')
    p_transition.add_argument('--no-hooks', action='store_true', help='Skip pre and post hooks')
    p_transition.add_argument('--no-sync', action='store_true', help='Skip pull and push (manual recovery)')
    p_transition.set_defaults(func=cmd_ticket_transition)

    p_assign = ticket_sub.add_parser('assign', help='Assign a ticket to an agent')
    p_assign.add_argument('id', help='Ticket id')
    p_assign.add_argument('agent', help='Agent id')
    p_assign.set_defaults(func=cmd_ticket_assign)

    p_unassign = ticket_sub.add_parser('unassign', help='Clear a ticket assignment')
    p_unassign.add_argument('id', help='Ticket id')
    p_unassign.set_defaults(func=cmd_ticket_unassign)

    p_comment = ticket_sub.add_parser('comment', help='Append a comment')
    p_comment.add_argument('id', help='Ticket id')
    p_comment.add_argument('text', help='Comment text')
    p_comment.add_argument('--author', '-a', help='Author (default: WIGGUM_AGENT_ID)')
    p_comment.set_defaults(func=cmd_ticket_comment)

    p_set = ticket_sub.add_parser('set', help='Update a ticket field')
    p_set.add_argument('id', help='Ticket id')
    p_set.add_argument('key', help='type, priority, depends_on, blocks, title or description')
    p_set.add_argument('value', help='New value (comma-separated for lists)')
    p_set.set_defaults(func=cmd_ticket_set)

    p_history = ticket_sub.add_parser('history', help='Revisions of a ticket, newest first')
    p_history.add_argument('id', help='Ticket id')
    p_history.set_defaults(func=cmd_ticket_history)

    p_sync = ticket_sub.add_parser('sync', help='Pull and push the tickets replica')
    sync_mode = p_sync.add_mutually_exclusive_group()
    sync_mode.add_argument('--pull', action='store_true', help='Only pull')
    sync_mode.add_argument('--push', action='store_true', help='Only push')
    p_sync.set_defaults(func=cmd_ticket_sync)

    # wiggum hook
    p_hook = subparsers.add_parser('hook', help='Hook operations')
    hook_sub = p_hook.add_subparsers(dest='hook_cmd', required=True)

    p_hook_run = hook_sub.add_parser('run', help='Run a hook now')
    p_hook_run.add_argument('name', help='Hook name')
    p_hook_run.add_argument('ticket', help='Ticket id')
    p_hook_run.set_defaults(func=cmd_hook_run)

    p_hook_list = hook_sub.add_parser('list', help='List project and default hooks')
    p_hook_list.set_defaults(func=cmd_hook_list)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(verbose=args.verbose, quiet=args.quiet)
    return run_command(args)


if __name__ == '__main__':
    sys.exit(main())
