"""
Moderation Label Store

Labels are keyed on (src, uri, cid, val). A write only replaces the stored
row when its creation time (cts) is not older, and reads return, per
(src, uri, val), the newest row that is neither negated nor expired.

Timestamps are normalised to YYYY-MM-DDTHH:MM:SS.ffffffZ so that text
comparison in SQL is time comparison.

Usage:
    labels = LabelRepository(db)
    labels.put(Label(src='did:plc:mod', uri='at://did:x/app.test.post/abc',
                     val='spam', cts='2024-01-01T00:00:00Z'))
    active = labels.query(['at://did:x/app.test.post/abc'])
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from core.errors import ValidationError

from .schema import Database

logger = logging.getLogger(__name__)


def normalize_timestamp(value: Any) -> str:
    """
    Normalise an ISO-8601 timestamp (or datetime) to UTC microsecond text.

    Naive values are taken as UTC.

    Raises:
        ValidationError: if the value is not a timestamp
    """
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            text = str(value).strip()
            if text.endswith(('Z', 'z')):
                text = text[:-1] + '+00:00'
            dt = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError(f'Invalid timestamp: {value!r}', field='cts')

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%fZ')


@dataclass
class Label:
    """
    A moderation label on a subject.

    Attributes:
        src: Issuer DID
        uri: Subject (record URI or DID)
        val: Label value
        cts: Creation time
        cid: Optional subject revision
        neg: True if this label negates an earlier one
        exp: Optional expiry time
    """
    src: str
    uri: str
    val: str
    cts: str
    cid: Optional[str] = None
    neg: bool = False
    exp: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Label':
        missing = [k for k in ('src', 'uri', 'val', 'cts') if not data.get(k)]
        if missing:
            raise ValidationError(f"Label missing fields: {', '.join(missing)}", fields=missing)
        return cls(
            src=data['src'],
            uri=data['uri'],
            val=data['val'],
            cts=data['cts'],
            cid=data.get('cid') or None,
            neg=bool(data.get('neg', False)),
            exp=data.get('exp') or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'src': self.src,
            'uri': self.uri,
            'val': self.val,
            'neg': self.neg,
            'cts': self.cts,
        }
        if self.cid:
            data['cid'] = self.cid
        if self.exp:
            data['exp'] = self.exp
        return data


class LabelRepository:
    """Sole writer of the labels table."""

    def __init__(self, db: Database):
        self.db = db

    def put(self, label: Label) -> bool:
        """
        Conditionally upsert a label.

        Returns:
            True if the row was inserted or replaced, False if a newer row won
        """
        cts = normalize_timestamp(label.cts)
        exp = normalize_timestamp(label.exp) if label.exp else None

        with self.db.transaction() as conn:
            cursor = conn.execute('''
                INSERT INTO labels (src, uri, cid, val, neg, cts, exp)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(src, uri, cid, val) DO UPDATE SET
                    neg = excluded.neg,
                    cts = excluded.cts,
                    exp = excluded.exp
                WHERE excluded.cts >= labels.cts
            ''', (label.src, label.uri, label.cid or '', label.val,
                  1 if label.neg else 0, cts, exp))
            applied = cursor.rowcount > 0

        if not applied:
            logger.debug(
                f'Ignored stale label {label.val} on {label.uri}',
                extra={'src': label.src, 'cts': cts}
            )
        return applied

    def put_many(self, labels: Iterable[Label]) -> int:
        """Put a batch of labels. Returns how many were applied."""
        with self.db.transaction():
            return sum(1 for label in labels if self.put(label))

    def query(self, subjects: List[str], issuers: Optional[List[str]] = None) -> List[Label]:
        """
        Active labels for the given subjects.

        Args:
            subjects: Subject URIs/DIDs
            issuers: Restrict to these label sources

        Returns:
            Newest non-negated, non-expired label per (src, uri, val)
        """
        if not subjects:
            return []

        subject_conds = ' OR '.join('l1.uri = ?' for _ in subjects)
        params: List[Any] = list(subjects)

        issuer_sql = ''
        if issuers:
            issuer_sql = 'AND (' + ' OR '.join('l1.src = ?' for _ in issuers) + ')'
            params.extend(issuers)

        params.append(normalize_timestamp(datetime.now(timezone.utc)))

        sql = f'''
            SELECT * FROM labels l1
            WHERE ({subject_conds})
              {issuer_sql}
              AND (l1.exp IS NULL OR l1.exp > ?)
              AND l1.cts = (
                  SELECT MAX(l2.cts) FROM labels l2
                  WHERE l2.src = l1.src AND l2.uri = l1.uri AND l2.val = l1.val
              )
              AND l1.neg = 0
            ORDER BY l1.uri, l1.src, l1.val
        '''

        with self.db.transaction() as conn:
            rows = conn.execute(sql, params).fetchall()

        return [
            Label(
                src=row['src'],
                uri=row['uri'],
                val=row['val'],
                cts=row['cts'],
                cid=row['cid'] or None,
                neg=bool(row['neg']),
                exp=row['exp'],
            )
            for row in rows
        ]

    def clear(self) -> int:
        """Delete all labels. Returns the number removed."""
        with self.db.transaction() as conn:
            cursor = conn.execute('DELETE FROM labels')
            removed = cursor.rowcount

        logger.info(f'Cleared {removed} labels')
        return removed
