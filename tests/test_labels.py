"""
Tests for the Label Store

Newest-wins upserts, negation, expiry and issuer filtering.
"""

import pytest
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent))

from core.errors import ValidationError
from database import Database, Label, LabelRepository
from database.labels import normalize_timestamp
from tests.fixtures.sample_data import ALICE, POST, uri

MOD = 'did:plc:moderator'
OTHER_MOD = 'did:plc:other'
SUBJECT = uri(ALICE, POST, 'a')

T1 = '2024-01-01T00:00:00Z'
T2 = '2024-01-02T00:00:00Z'


@pytest.fixture
def labels():
    db = Database(':memory:')
    yield LabelRepository(db)
    db.close()


class TestNormalizeTimestamp:
    """Tests for timestamp normalisation."""

    def test_z_suffix(self):
        assert normalize_timestamp('2024-01-01T00:00:00Z') == '2024-01-01T00:00:00.000000Z'

    def test_offset_converted_to_utc(self):
        assert normalize_timestamp('2024-01-01T02:00:00+02:00') == '2024-01-01T00:00:00.000000Z'

    def test_naive_is_utc(self):
        assert normalize_timestamp('2024-01-01T00:00:00.500') == '2024-01-01T00:00:00.500000Z'

    def test_invalid(self):
        with pytest.raises(ValidationError):
            normalize_timestamp('yesterday')


class TestPut:
    """Conditional upserts."""

    @pytest.mark.parametrize('order', [(T1, T2), (T2, T1)])
    def test_newest_wins_in_either_order(self, labels, order):
        """Whatever the arrival order, the T2 row is the one kept."""
        for cts in order:
            labels.put(Label(src=MOD, uri=SUBJECT, val='spam', cts=cts, neg=(cts == T1)))

        active = labels.query([SUBJECT])

        assert len(active) == 1
        assert active[0].cts == normalize_timestamp(T2)

    def test_stale_write_reports_false(self, labels):
        assert labels.put(Label(src=MOD, uri=SUBJECT, val='spam', cts=T2)) is True
        assert labels.put(Label(src=MOD, uri=SUBJECT, val='spam', cts=T1)) is False

    def test_equal_timestamp_replaces(self, labels):
        labels.put(Label(src=MOD, uri=SUBJECT, val='spam', cts=T1))
        assert labels.put(Label(src=MOD, uri=SUBJECT, val='spam', cts=T1, neg=True)) is True
        assert labels.query([SUBJECT]) == []

    def test_put_many(self, labels):
        batch = [
            Label(src=MOD, uri=SUBJECT, val='spam', cts=T2),
            Label(src=MOD, uri=SUBJECT, val='spam', cts=T1),
            Label(src=MOD, uri=SUBJECT, val='nsfw', cts=T1),
        ]
        assert labels.put_many(batch) == 2


class TestQuery:
    """Active label reads."""

    def test_negation_hides_label(self, labels):
        labels.put(Label(src=MOD, uri=SUBJECT, val='spam', cts=T1))
        labels.put(Label(src=MOD, uri=SUBJECT, val='spam', cts=T2, neg=True))

        assert labels.query([SUBJECT]) == []

    def test_negation_on_other_revision_hides_label(self, labels):
        """The newest row per (src, uri, val) decides, across cids."""
        labels.put(Label(src=MOD, uri=SUBJECT, val='spam', cts=T1, cid='bafy1'))
        labels.put(Label(src=MOD, uri=SUBJECT, val='spam', cts=T2, cid='bafy2', neg=True))

        assert labels.query([SUBJECT]) == []

    def test_expired_label_hidden(self, labels):
        labels.put(Label(src=MOD, uri=SUBJECT, val='spam', cts=T1, exp='2000-01-01T00:00:00Z'))
        labels.put(Label(src=MOD, uri=SUBJECT, val='nsfw', cts=T1, exp='2999-01-01T00:00:00Z'))

        assert [label.val for label in labels.query([SUBJECT])] == ['nsfw']

    def test_issuer_filter(self, labels):
        labels.put(Label(src=MOD, uri=SUBJECT, val='spam', cts=T1))
        labels.put(Label(src=OTHER_MOD, uri=SUBJECT, val='spam', cts=T1))

        assert [label.src for label in labels.query([SUBJECT], [OTHER_MOD])] == [OTHER_MOD]
        assert len(labels.query([SUBJECT])) == 2

    def test_multiple_subjects(self, labels):
        other = uri(ALICE, POST, 'b')
        labels.put(Label(src=MOD, uri=SUBJECT, val='spam', cts=T1))
        labels.put(Label(src=MOD, uri=other, val='spam', cts=T1))
        labels.put(Label(src=MOD, uri=uri(ALICE, POST, 'c'), val='spam', cts=T1))

        assert [label.uri for label in labels.query([SUBJECT, other])] == [SUBJECT, other]

    def test_empty_subjects(self, labels):
        labels.put(Label(src=MOD, uri=SUBJECT, val='spam', cts=T1))
        assert labels.query([]) == []

    def test_cid_round_trip(self, labels):
        labels.put(Label(src=MOD, uri=SUBJECT, val='spam', cts=T1))
        assert labels.query([SUBJECT])[0].cid is None

    def test_clear(self, labels):
        labels.put(Label(src=MOD, uri=SUBJECT, val='spam', cts=T1))
        labels.put(Label(src=MOD, uri=SUBJECT, val='nsfw', cts=T1))

        assert labels.clear() == 2
        assert labels.query([SUBJECT]) == []


class TestLabelModel:
    """Dict conversion."""

    def test_from_dict_requires_fields(self):
        with pytest.raises(ValidationError):
            Label.from_dict({'src': MOD, 'uri': SUBJECT})

    def test_to_dict_omits_empty_optionals(self):
        label = Label.from_dict({'src': MOD, 'uri': SUBJECT, 'val': 'spam', 'cts': T1})
        assert label.to_dict() == {'src': MOD, 'uri': SUBJECT, 'val': 'spam', 'neg': False, 'cts': T1}
