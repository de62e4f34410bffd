import pytest

from orbmap.keyframe_database import KeyFrameDatabase


class Vocabulary:
    def __init__(self, size=10):
        self._size = size

    def __len__(self):
        return self._size

    def score(self, a, b):
        return sum(min(a[w], b[w]) for w in a if w in b)


class StubKeyFrame:
    def __init__(self, kf_id, bow, connected=(), neighbours=()):
        self.id = kf_id
        self.bow_vec = dict(bow)
        self.loop_query = 0
        self.loop_words = 0
        self.loop_score = 0.0
        self.reloc_query = 0
        self.reloc_words = 0
        self.reloc_score = 0.0
        self.connected = set(connected)
        self.neighbours = list(neighbours)

    def connected_keyframes(self):
        return set(self.connected)

    def best_covisibility_keyframes(self, n):
        return self.neighbours[:n]


class StubFrame:
    def __init__(self, frame_id, bow):
        self.id = frame_id
        self.bow_vec = dict(bow)


def all_words(n=5):
    return {w: 1.0 for w in range(n)}


def test_relocalization_keeps_keyframes_sharing_enough_words():
    db = KeyFrameDatabase(Vocabulary())
    kf_a = StubKeyFrame(1, all_words())
    kf_b = StubKeyFrame(2, {0: 1.0})
    db.add(kf_a)
    db.add(kf_b)
    result = db.detect_relocalization_candidates(StubFrame(7, all_words()))
    assert result == [kf_a]
    assert kf_a.reloc_words == 5
    assert kf_b.reloc_words == 1


def test_empty_database_gives_no_candidates():
    db = KeyFrameDatabase(Vocabulary())
    assert db.detect_relocalization_candidates(StubFrame(3, all_words())) == []
    query = StubKeyFrame(9, all_words())
    assert db.detect_loop_candidates(query, 0.0) == []


def test_erase_removes_keyframe():
    db = KeyFrameDatabase(Vocabulary())
    kf = StubKeyFrame(1, all_words())
    db.add(kf)
    db.erase(kf)
    assert db.detect_relocalization_candidates(StubFrame(4, all_words())) == []


def test_clear_removes_everything():
    db = KeyFrameDatabase(Vocabulary())
    db.add(StubKeyFrame(1, all_words()))
    db.add(StubKeyFrame(2, all_words()))
    db.clear()
    assert db.detect_relocalization_candidates(StubFrame(5, all_words())) == []


def test_loop_candidates_skip_connected_keyframes():
    db = KeyFrameDatabase(Vocabulary())
    connected = StubKeyFrame(1, all_words())
    other = StubKeyFrame(2, all_words())
    db.add(connected)
    db.add(other)
    query = StubKeyFrame(10, all_words(), connected=[connected])
    assert db.detect_loop_candidates(query, 0.0) == [other]


def test_loop_candidates_respect_min_score():
    db = KeyFrameDatabase(Vocabulary())
    kf = StubKeyFrame(1, {0: 0.1, 1: 0.1})
    db.add(kf)
    query = StubKeyFrame(10, {0: 1.0, 1: 1.0})
    assert db.detect_loop_candidates(query, 0.5) == []
    query2 = StubKeyFrame(11, {0: 1.0, 1: 1.0})
    assert db.detect_loop_candidates(query2, 0.1) == [kf]


def test_loop_candidates_prefer_best_covisible_neighbour():
    db = KeyFrameDatabase(Vocabulary())
    strong = StubKeyFrame(2, {0: 1.0, 1: 1.0})
    weak = StubKeyFrame(1, {0: 0.2, 1: 0.2}, neighbours=[strong])
    db.add(weak)
    db.add(strong)
    query = StubKeyFrame(10, {0: 1.0, 1: 1.0})
    result = db.detect_loop_candidates(query, 0.0)
    assert result == [strong]
    assert len(result) == len(set(result))


def test_relocalization_accumulates_neighbour_scores():
    db = KeyFrameDatabase(Vocabulary())
    strong = StubKeyFrame(2, {0: 1.0, 1: 1.0})
    weak = StubKeyFrame(1, {0: 0.2, 1: 0.2}, neighbours=[strong])
    db.add(weak)
    db.add(strong)
    result = db.detect_relocalization_candidates(StubFrame(8, {0: 1.0, 1: 1.0}))
    assert result == [strong]
    assert strong.reloc_score == pytest.approx(2.0)


def test_word_outside_vocabulary_raises():
    db = KeyFrameDatabase(Vocabulary(size=3))
    with pytest.raises(IndexError):
        db.add(StubKeyFrame(1, {5: 1.0}))