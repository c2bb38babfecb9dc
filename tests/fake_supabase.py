"""In-memory stand-in for the supabase-py client surface the services use."""
import copy
import random
import re
from itertools import count
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from postgrest.exceptions import APIError

SEQ = '__seq'

DEFAULT_UNIQUE = {
    'patient_details': ['user_id'],
    'user_profiles': ['user_id'],
    'patient_intake_transcripts': ['intake_id'],
    'patient_intake_summaries': ['intake_id'],
    'conversation_analyses': ['conversation_id'],
    'processed_conversations': ['conversation_id'],
    'circles': ['name'],
}

class FakeResponse:
    def __init__(self, data, count=None):
        self.data = data
        self.count = count

def _split_top_level(expression: str) -> List[str]:
    parts, depth, current = [], 0, ''
    for char in expression:
        if char == '(':
            depth += 1
        elif char == ')':
            depth -= 1
        if char == ',' and depth == 0:
            parts.append(current)
            current = ''
        else:
            current += char
    if current:
        parts.append(current)
    return parts

def _or_condition(part: str) -> Callable[[Dict[str, Any]], bool]:
    column, op, value = part.split('.', 2)
    if op == 'is' and value == 'null':
        return lambda row: row.get(column) is None
    if op == 'in':
        options = [v.strip() for v in value.strip('()').split(',') if v.strip()]
        return lambda row: str(row.get(column)) in options
    if op == 'eq':
        return lambda row: str(row.get(column)) == value
    raise ValueError(f"Unsupported or_ operator: {op}")

class FakeQuery:
    def __init__(self, db: 'FakeSupabase', table: str):
        self.db = db
        self.table_name = table
        self.operation = 'select'
        self.payload = None
        self.filters: List[Callable[[Dict[str, Any]], bool]] = []
        self.orders: List[tuple] = []
        self.limit_value: Optional[int] = None
        self.range_value: Optional[tuple] = None
        self.count_mode: Optional[str] = None
        self.on_conflict: Optional[str] = None
        self.ignore_duplicates = False

    # operations

    def select(self, columns='*', count=None):
        self.count_mode = count
        return self

    def insert(self, payload):
        self.operation, self.payload = 'insert', payload
        return self

    def update(self, payload):
        self.operation, self.payload = 'update', payload
        return self

    def delete(self):
        self.operation = 'delete'
        return self

    def upsert(self, payload, on_conflict='id', ignore_duplicates=False):
        self.operation, self.payload = 'upsert', payload
        self.on_conflict = on_conflict
        self.ignore_duplicates = ignore_duplicates
        return self

    # filters

    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def neq(self, column, value):
        self.filters.append(lambda row: row.get(column) != value)
        return self

    def is_(self, column, value):
        if value in ('null', None):
            self.filters.append(lambda row: row.get(column) is None)
        else:
            self.filters.append(lambda row: row.get(column) is value)
        return self

    def in_(self, column, values):
        values = list(values)
        self.filters.append(lambda row: row.get(column) in values)
        return self

    def gte(self, column, value):
        self.filters.append(lambda row: row.get(column) is not None and row.get(column) >= value)
        return self

    def lte(self, column, value):
        self.filters.append(lambda row: row.get(column) is not None and row.get(column) <= value)
        return self

    def ilike(self, column, pattern):
        regex = re.compile('^' + re.escape(pattern).replace('%', '.*') + '$', re.IGNORECASE)
        self.filters.append(lambda row: bool(regex.match(str(row.get(column) or ''))))
        return self

    def overlaps(self, column, values):
        values = set(values)
        self.filters.append(lambda row: bool(values & set(row.get(column) or [])))
        return self

    def or_(self, expression):
        conditions = [_or_condition(part) for part in _split_top_level(expression)]
        self.filters.append(lambda row: any(c(row) for c in conditions))
        return self

    def order(self, column, desc=False):
        self.orders.append((column, desc))
        return self

    def limit(self, size):
        self.limit_value = size
        return self

    def range(self, start, end):
        self.range_value = (start, end)
        return self

    # execution

    def _matches(self, row):
        return all(f(row) for f in self.filters)

    def execute(self):
        self.db.calls.append((self.table_name, self.operation))
        failure = self.db.take_failure(self.table_name, self.operation)
        if failure is not None:
            raise failure

        handler = getattr(self, f"_execute_{self.operation}")
        return handler()

    def _execute_select(self):
        matched = [r for r in self.db.rows(self.table_name) if self._matches(r)]
        total = len(matched)
        # stable sorts applied last-to-first give multi-column ordering
        ordered = sorted(matched, key=lambda r: r[SEQ])
        for column, desc in reversed(self.orders):
            ordered = sorted(
                ordered,
                key=lambda r: (r.get(column) is not None, r.get(column) if r.get(column) is not None else 0, r[SEQ]),
                reverse=desc
            )
        if self.range_value is not None:
            start, end = self.range_value
            ordered = ordered[start:end + 1]
        if self.limit_value is not None:
            ordered = ordered[:self.limit_value]
        return FakeResponse([self.db.public(r) for r in ordered], total if self.count_mode else None)

    def _execute_insert(self):
        payload = self.payload if isinstance(self.payload, list) else [self.payload]
        inserted = [self.db.insert_row(self.table_name, row) for row in payload]
        return FakeResponse(inserted)

    def _execute_update(self):
        updated = []
        for row in self.db.rows(self.table_name):
            if self._matches(row):
                row.update(copy.deepcopy(self.payload))
                updated.append(self.db.public(row))
        return FakeResponse(updated)

    def _execute_delete(self):
        table = self.db.tables.setdefault(self.table_name, [])
        deleted = [r for r in table if self._matches(r)]
        self.db.tables[self.table_name] = [r for r in table if not self._matches(r)]
        return FakeResponse([self.db.public(r) for r in deleted])

    def _execute_upsert(self):
        payload = self.payload if isinstance(self.payload, list) else [self.payload]
        keys = [k.strip() for k in (self.on_conflict or 'id').split(',')]
        results = []
        for row in payload:
            existing = next(
                (r for r in self.db.rows(self.table_name)
                 if all(k in row and r.get(k) == row.get(k) for k in keys)),
                None
            )
            if existing is None:
                results.append(self.db.insert_row(self.table_name, row))
            elif not self.ignore_duplicates:
                existing.update(copy.deepcopy(row))
                results.append(self.db.public(existing))
        return FakeResponse(results)

class FakeRPC:
    def __init__(self, db, name, params):
        self.db, self.name, self.params = db, name, params

    def execute(self):
        self.db.calls.append(('rpc', self.name))
        failure = self.db.take_failure('rpc', self.name)
        if failure is not None:
            raise failure
        return FakeResponse(self.db.rpc_handlers[self.name](self.params or {}))

class FakeBucket:
    def __init__(self, db, bucket):
        self.db, self.bucket = db, bucket

    def download(self, path):
        failure = self.db.take_failure('storage', 'download')
        if failure is not None:
            raise failure
        try:
            return self.db.files[(self.bucket, path)]
        except KeyError:
            raise Exception(f"Object not found: {self.bucket}/{path}")

    def upload(self, path, data, file_options=None):
        failure = self.db.take_failure('storage', 'upload')
        if failure is not None:
            raise failure
        self.db.files[(self.bucket, path)] = data
        return {'Key': f"{self.bucket}/{path}"}

class FakeStorage:
    def __init__(self, db):
        self.db = db

    def from_(self, bucket):
        return FakeBucket(self.db, bucket)

class FakeSupabase:
    def __init__(self, unique: Optional[Dict[str, List[str]]] = None):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.unique = dict(DEFAULT_UNIQUE if unique is None else unique)
        self.files: Dict[tuple, bytes] = {}
        self.calls: List[tuple] = []
        self.failures: Dict[tuple, List[Exception]] = {}
        self.storage = FakeStorage(self)
        self._seq = count()
        self.rpc_handlers: Dict[str, Callable[[Dict[str, Any]], Any]] = {
            'generate_unique_access_code': self._generate_access_code,
        }

    # client surface

    def table(self, name):
        return FakeQuery(self, name)

    def rpc(self, name, params=None):
        return FakeRPC(self, name, params)

    # helpers for tests

    def seed(self, table: str, *rows: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [self.insert_row(table, row, check_unique=False) for row in rows]

    def all(self, table: str) -> List[Dict[str, Any]]:
        return [self.public(r) for r in self.rows(table)]

    def fail_on(self, table: str, operation: str, error: Optional[Exception] = None, times: int = 1) -> None:
        """Make the next ``times`` executions of (table, operation) raise."""
        error = error or APIError({'message': f"simulated {operation} failure on {table}", 'code': 'XX000'})
        self.failures.setdefault((table, operation), []).extend([error] * times)

    def take_failure(self, table: str, operation: str) -> Optional[Exception]:
        pending = self.failures.get((table, operation))
        if pending:
            return pending.pop(0)
        return None

    def call_count(self, table: Optional[str] = None) -> int:
        return sum(1 for t, _ in self.calls if table is None or t == table)

    # internals

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return self.tables.setdefault(table, [])

    @staticmethod
    def public(row: Dict[str, Any]) -> Dict[str, Any]:
        return {k: copy.deepcopy(v) for k, v in row.items() if k != SEQ}

    def insert_row(self, table: str, row: Dict[str, Any], check_unique: bool = True) -> Dict[str, Any]:
        stored = copy.deepcopy(row)
        stored.setdefault('id', str(uuid4()))
        if check_unique:
            for column in ['id'] + self.unique.get(table, []):
                if stored.get(column) is not None and any(
                    r.get(column) == stored[column] for r in self.rows(table)
                ):
                    raise APIError({
                        'message': f'duplicate key value violates unique constraint "{table}_{column}_key"',
                        'code': '23505'
                    })
        stored[SEQ] = next(self._seq)
        self.rows(table).append(stored)
        return self.public(stored)

    def _generate_access_code(self, params):
        used = {r.get('access_code') for r in self.rows('intake_sessions')}
        while True:
            code = f"{random.randint(10000, 99999)}"
            if code not in used:
                return code
