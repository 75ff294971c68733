"""Stand-ins for driver sessions, result rows and the reverse DNS resolver."""

from collections import namedtuple

SessionRow = namedtuple('SessionRow', ['session_id', 'command', 'duration', 'parameters', 'started_at'])
StatsRow = namedtuple('StatsRow', ['duration', 'parameters'])
EventRow = namedtuple('EventRow', ['event_id', 'activity', 'source', 'source_elapsed', 'thread'])


class FakeSession:
    """Stands in for a cassandra.cluster.Session: records queries and replays rows."""

    def __init__(self, rows=None, error=None):
        self.rows = rows or []
        self.error = error
        self.executed = []

    def execute(self, query, parameters=None):
        self.executed.append((query, parameters))
        if self.error is not None:
            raise self.error
        return iter(self.rows)


class FakeResolver:
    """Reverse DNS table lookup; unknown addresses resolve to nothing."""

    def __init__(self, table=None):
        self.table = table or {}
        self.calls = []

    def __call__(self, ip):
        self.calls.append(ip)
        return list(self.table.get(ip, []))
