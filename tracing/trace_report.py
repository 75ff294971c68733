#!/usr/bin/env python3

import argparse
import configparser
import logging
import os
import re
import socket
import ssl
import sys
import uuid

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from cassandra import ConsistencyLevel
from cassandra.auth import PlainTextAuthProvider
from cassandra.cluster import Cluster
from cassandra.policies import WhiteListRoundRobinPolicy
from cassandra.util import datetime_from_uuid1

logger = logging.getLogger(__name__)

TRACING_KS = 'system_traces'
SESSIONS_QUERY = "SELECT session_id,command,duration,parameters,started_at FROM {}.sessions".format(TRACING_KS)
STATS_QUERY = "SELECT duration,parameters FROM {}.sessions".format(TRACING_KS)
EVENTS_QUERY = "SELECT event_id,activity,source,source_elapsed,thread FROM {}.events WHERE session_id = %s".format(TRACING_KS)

# IPv4 only, ASCII digits only: octets are not range checked
EMBEDDED_IP_PATTERN = re.compile(r' (?P<ip>/\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3})', re.ASCII)

YELLOW = '\033[0;33m'
CYAN = '\033[0;36m'
ANSI_RESET = '\033[0m'


class TraceReportError(Exception):
    pass


################################################################################
@dataclass(frozen=True)
class Cqlshrc:
    username: Optional[str] = None
    password: Optional[str] = None
    certfile: Optional[str] = None

    @classmethod
    def from_file(cls, filename):
        """Read the credentials and the CA certificate path out of a cqlshrc file."""
        parser = configparser.ConfigParser(interpolation=None)
        try:
            with open(filename) as f:
                parser.read_file(f)
        except (OSError, configparser.Error) as e:
            raise TraceReportError("Unable to parse cqlshrc: {}".format(e)) from e

        return cls(username=parser.get('authentication', 'username', fallback=None),
                   password=parser.get('authentication', 'password', fallback=None),
                   certfile=parser.get('ssl', 'certfile', fallback=None))


@dataclass(frozen=True)
class TraceReportConfig:
    cqlshrc: str = 'cqlshrc'
    hostname: str = 'localhost'
    port: int = 9042
    use_color: bool = False


@dataclass(frozen=True)
class TraceSession:
    session_id: uuid.UUID
    command: str
    duration: int
    parameters: Dict[str, str] = field(default_factory=dict)
    started_at: object = None

    @property
    def query(self):
        return self.parameters.get('query', '')

    @classmethod
    def from_row(cls, row):
        return cls(row.session_id, row.command, row.duration or 0, dict(row.parameters or {}), row.started_at)


@dataclass(frozen=True)
class TraceEvent:
    timestamp: object
    activity: str
    source: str
    source_elapsed: int
    thread: str

    @classmethod
    def from_row(cls, row):
        return cls(datetime_from_uuid1(row.event_id), row.activity or '', str(row.source),
                   row.source_elapsed or 0, row.thread or '')


class QueryStats:
    """Running latency aggregate of a single query text."""

    def __init__(self, duration):
        self.min = duration
        self.max = duration
        self.cumulative = duration
        self.count = 1

    def update(self, duration):
        self.cumulative += duration
        self.count += 1
        if duration < self.min:
            self.min = duration
        if duration > self.max:
            self.max = duration

    def avg(self):
        return self.cumulative // self.count

    def __repr__(self):
        return "QueryStats(count={}, min={}, max={}, avg={})".format(self.count, self.min, self.max, self.avg())


################################################################################
def colorize(text, color, enabled):
    text = str(text)
    if not enabled:
        return text
    return "{}{}{}".format(color, text, ANSI_RESET)


def color_enabled(stream, no_color=False):
    if no_color or os.environ.get('NO_COLOR'):
        return False
    isatty = getattr(stream, 'isatty', None)
    return bool(isatty and isatty())


def reverse_lookup(ip) -> List[str]:
    try:
        hostname, aliases, _ = socket.gethostbyaddr(ip)
    except (OSError, UnicodeError) as e:
        logger.debug("Reverse lookup of {} failed: {}".format(ip, e))
        return []

    return [hostname] + aliases


def resolve_source(ip, resolver=reverse_lookup):
    names = resolver(ip)
    name = names[0] if names else ip

    return name.rstrip(".")


def extract_first_embedded_ipv4(text) -> Optional[Tuple[Tuple[int, int], str]]:
    """
    Look for an unresolved " /a.b.c.d" address in a trace activity string.

    Returns ((start, end), "a.b.c.d") where the span covers the "/"-prefixed
    token, or None if the text has no such token.
    """
    m = EMBEDDED_IP_PATTERN.search(text)
    if not m:
        return None

    return m.span('ip'), m.group('ip').lstrip("/")


def substitute_embedded_ip(activity, resolver=reverse_lookup):
    found = extract_first_embedded_ipv4(activity)
    if not found:
        return activity

    (start, end), ip = found
    # Best-effort
    names = resolver(ip)
    if not names:
        return activity

    # Trailing dot trimmed here too, as for the source name
    return activity[:start] + names[0].rstrip(".") + activity[end:]


def aggregate_query_stats(rows):
    queries = {}
    total = 0

    for row in rows:
        duration = row.duration or 0
        query = (row.parameters or {}).get('query', '')
        stats = queries.get(query)
        if stats is None:
            queries[query] = QueryStats(duration)
        else:
            stats.update(duration)
        total += 1

    return queries, total


def rank_queries(queries):
    # Order query strings by their average, descending
    return sorted(queries.keys(), key=lambda q: (-queries[q].avg(), q))


################################################################################
def connect(config):
    rc = Cqlshrc.from_file(config.cqlshrc)

    kwargs = {}
    if rc.username:
        kwargs['auth_provider'] = PlainTextAuthProvider(username=rc.username, password=rc.password)
    if rc.certfile:
        ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        ssl_context.check_hostname = False
        ssl_context.load_verify_locations(rc.certfile)
        kwargs['ssl_context'] = ssl_context

    logger.debug("Connecting to {}:{}".format(config.hostname, config.port))
    cluster = Cluster(contact_points=[config.hostname], port=config.port,
                      load_balancing_policy=WhiteListRoundRobinPolicy([config.hostname]), **kwargs)
    try:
        session = cluster.connect(TRACING_KS)
    except Exception:
        cluster.shutdown()
        raise

    session.default_consistency_level = ConsistencyLevel.ONE

    return cluster, session


def list_sessions(session, min_duration=0, out=None, colors=False):
    sessions = []
    total = 0

    logger.debug(SESSIONS_QUERY)
    for row in session.execute(SESSIONS_QUERY):
        total += 1
        s = TraceSession.from_row(row)
        if s.duration >= min_duration:
            sessions.append(s)

    sessions.sort(key=lambda s: s.duration, reverse=True)

    for s in sessions:
        print("{} | {:8d} | {:<33} | {}".format(colorize(s.session_id, YELLOW, colors), s.duration,
                                               str(s.started_at), colorize(s.query, CYAN, colors)), file=out)

    print(file=out)
    print("{} matching results ({} total).".format(len(sessions), total), file=out)

    return sessions, total


def list_events(session, session_id, only_source=None, out=None, colors=False, resolver=None):
    if resolver is None:
        resolver = reverse_lookup
    line_no = 1

    logger.debug(EVENTS_QUERY)
    for row in session.execute(EVENTS_QUERY, (session_id,)):
        event = TraceEvent.from_row(row)
        src_name = resolve_source(event.source, resolver)
        activity = substitute_embedded_ip(event.activity, resolver)

        # (Maybe) filter events to those from a single source name/IP
        if only_source and only_source != src_name:
            continue

        print("{:2d} | {} | {:>15} | {:8d} | {} | {}".format(line_no, colorize("{:<48}".format(str(event.timestamp)), YELLOW, colors),
                                                            src_name, event.source_elapsed, event.thread,
                                                            colorize(activity, CYAN, colors)), file=out)
        line_no += 1

    return line_no - 1


def query_stats(session, out=None, colors=False):
    logger.debug(STATS_QUERY)
    queries, total = aggregate_query_stats(session.execute(STATS_QUERY))

    print("{:>9} | {:>5} | {:>5} | {:>5} | {}".format("Count", "Min", "Max", "Avg", "Query"), file=out)
    for query in rank_queries(queries):
        s = queries[query]
        print("{:9d} | {:5d} | {:5d} | {:5d} | {}".format(s.count, s.min, s.max, s.avg(), colorize(query, CYAN, colors)), file=out)

    print("\n{} unique queries ({} total sessions analyzed).".format(len(queries), total), file=out)

    return queries, total


################################################################################
def add_global_args(parser, suppress=False):
    def default(value):
        return argparse.SUPPRESS if suppress else value

    parser.add_argument('--cqlshrc', default=default('cqlshrc'), help='Full path to cqlshrc file.')
    parser.add_argument('--hostname', default=default('localhost'), help='Cassandra host.')
    parser.add_argument('--port', default=default(9042), type=int, help='Cassandra port.')
    parser.add_argument('--no-color', action='store_true', default=default(False), help='Disable colored output.')
    parser.add_argument('--debug', action='store_true', default=default(False), help='Enable debug logging.')


def build_arg_parser():
    argp = argparse.ArgumentParser(prog='cassandra-trace-reporting', description='Introspect Cassandra query traces.')
    add_global_args(argp)

    commands = argp.add_subparsers(dest='command', metavar='{sessions,events,stats}')
    commands.required = True

    # Global flags are accepted after the command name too
    sessions = commands.add_parser('sessions', help='Query trace sessions.')
    add_global_args(sessions, suppress=True)
    sessions.add_argument('--min-duration', default=0, type=int, help='Minimum query duration (in micros).')

    events = commands.add_parser('events', help='Retrieve events for a trace session.')
    add_global_args(events, suppress=True)
    events.add_argument('--id', required=True, type=uuid.UUID, dest='session_id', help='Session ID')
    events.add_argument('--only-source', help='Only show events for a specific source.')

    stats = commands.add_parser('stats', help='Report query statistics.')
    add_global_args(stats, suppress=True)

    return argp


def main(argv=None):
    args = build_arg_parser().parse_args(argv)

    logging.basicConfig(stream=sys.stderr, level=logging.DEBUG if args.debug else logging.INFO,
                        format='%(asctime)s [%(levelname)s] %(message)s')

    config = TraceReportConfig(cqlshrc=args.cqlshrc, hostname=args.hostname, port=args.port,
                               use_color=color_enabled(sys.stdout, args.no_color))

    try:
        cluster, session = connect(config)
        try:
            if args.command == 'sessions':
                list_sessions(session, args.min_duration, colors=config.use_color)
            elif args.command == 'events':
                list_events(session, args.session_id, args.only_source, colors=config.use_color)
            elif args.command == 'stats':
                query_stats(session, colors=config.use_color)
        finally:
            cluster.shutdown()
    except Exception as e:
        logger.error("ERROR: {}".format(e))
        sys.exit(1)

    return 0


if __name__ == '__main__':
    sys.exit(main())
