"""Tests for the merge ledger, duplicate detection and output path policy."""

import json

import pytest

import m4smerge
from conftest import make_title

FLAGS = [(False, False), (True, False), (False, True), (True, True)]


@pytest.fixture
def entry(cache):
    make_title(cache, 'a', title='A')
    return next(m4smerge.scan_cache(cache))


@pytest.fixture
def outdir(tmp_path):
    path = tmp_path / 'out'
    path.mkdir()
    return path


@pytest.fixture
def ledger(outdir):
    return m4smerge.MergeLedger(outdir / m4smerge.LEDGER_NAME)


def record_output(ledger, entry, path, content=b'merged'):
    path.write_bytes(content)
    key = m4smerge.input_key(entry.video, entry.audio)
    result = m4smerge.MuxResult(backend='mp4box', returncode=0, elapsed=0.1,
                                output=path, size=path.stat().st_size)
    ledger.record(key, result, m4smerge.file_digest(path))
    return key


def test_file_digest(tmp_path):
    path = tmp_path / 'f'
    path.write_bytes(b'abc')
    assert m4smerge.file_digest(path) == \
        'ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad'


def test_input_key_changes_with_inputs(entry, tmp_path):
    key = m4smerge.input_key(entry.video, entry.audio)
    assert key == m4smerge.input_key(entry.video, entry.audio)
    sub = tmp_path / 'danmaku.xml'
    sub.write_text('<i/>')
    assert m4smerge.input_key(entry.video, entry.audio, sub) != key
    entry.audio.write_bytes(b'changed audio content')
    assert m4smerge.input_key(entry.video, entry.audio) != key


def test_ledger_persists(ledger, entry, outdir):
    key = record_output(ledger, entry, outdir / 'A.mp4')
    reloaded = m4smerge.MergeLedger(outdir / m4smerge.LEDGER_NAME)
    record = reloaded.lookup(key)
    assert record['output'] == 'A.mp4'
    assert record['size'] == len(b'merged')
    assert record['backend'] == 'mp4box'
    assert not (outdir / (m4smerge.LEDGER_NAME + '.tmp')).exists()


@pytest.mark.parametrize('content', ['{not json', '[]', '{"merges": 3}'])
def test_ledger_tolerates_bad_file(outdir, content, caplog):
    (outdir / m4smerge.LEDGER_NAME).write_text(content)
    ledger = m4smerge.MergeLedger(outdir / m4smerge.LEDGER_NAME)
    assert ledger.records == {}
    assert 'ledger' in caplog.text


def test_classifier_same_content_is_duplicate(ledger, entry, outdir):
    key = record_output(ledger, entry, outdir / 'A.mp4')
    classifier = m4smerge.DuplicateClassifier(ledger)
    assert classifier.is_duplicate(outdir / 'A.mp4', key)
    assert classifier.find_duplicate(key, outdir) == outdir / 'A.mp4'


def test_classifier_changed_content_same_size_is_not_duplicate(ledger, entry, outdir):
    key = record_output(ledger, entry, outdir / 'A.mp4')
    (outdir / 'A.mp4').write_bytes(b'MERGED')
    classifier = m4smerge.DuplicateClassifier(ledger)
    assert not classifier.is_duplicate(outdir / 'A.mp4', key)
    assert classifier.find_duplicate(key, outdir) is None


def test_classifier_without_record_is_not_duplicate(ledger, entry, outdir):
    (outdir / 'A.mp4').write_bytes(b'merged')
    key = m4smerge.input_key(entry.video, entry.audio)
    classifier = m4smerge.DuplicateClassifier(ledger)
    assert not classifier.is_duplicate(outdir / 'A.mp4', key)


def test_classifier_other_path_is_not_duplicate(ledger, entry, outdir):
    key = record_output(ledger, entry, outdir / 'A.mp4')
    (outdir / 'B.mp4').write_bytes(b'merged')
    classifier = m4smerge.DuplicateClassifier(ledger)
    assert not classifier.is_duplicate(outdir / 'B.mp4', key)


def resolve(entry, outdir, ledger, skip, overlay, reserved=None):
    return m4smerge.resolve_output(entry, outdir / 'A.mp4', m4smerge.DuplicateClassifier(ledger),
                                   skip=skip, overlay=overlay, reserved=reserved)


@pytest.mark.parametrize('skip, overlay', FLAGS)
def test_resolve_fresh(entry, outdir, ledger, skip, overlay):
    task = resolve(entry, outdir, ledger, skip, overlay)
    assert task.decision == m4smerge.PROCEED
    assert task.output == outdir / 'A.mp4'
    assert task.candidate == outdir / 'A.mp4'


@pytest.mark.parametrize('skip, overlay', FLAGS)
def test_resolve_identical_is_always_duplicate(entry, outdir, ledger, skip, overlay):
    record_output(ledger, entry, outdir / 'A.mp4')
    task = resolve(entry, outdir, ledger, skip, overlay)
    assert task.decision == m4smerge.DUPLICATE
    assert task.output == outdir / 'A.mp4'


@pytest.mark.parametrize('skip, overlay', FLAGS)
def test_resolve_duplicate_under_renamed_path(entry, outdir, ledger, skip, overlay):
    (outdir / 'A.mp4').write_bytes(b'someone else')
    record_output(ledger, entry, outdir / 'A_1.mp4')
    task = resolve(entry, outdir, ledger, skip, overlay)
    assert task.decision == m4smerge.DUPLICATE
    assert task.output == outdir / 'A_1.mp4'


@pytest.mark.parametrize('skip, overlay, decision, name', [
    (False, False, m4smerge.RENAME, 'A_1.mp4'),
    (True, False, m4smerge.SKIP, 'A.mp4'),
    (False, True, m4smerge.OVERWRITE, 'A.mp4'),
    (True, True, m4smerge.SKIP, 'A.mp4'),
])
def test_resolve_different_existing_file(entry, outdir, ledger, skip, overlay, decision, name):
    (outdir / 'A.mp4').write_bytes(b'unrelated')
    task = resolve(entry, outdir, ledger, skip, overlay)
    assert task.decision == decision
    assert task.output == outdir / name
    assert (outdir / 'A.mp4').read_bytes() == b'unrelated'


def test_resolve_rename_never_picks_existing_path(entry, outdir, ledger):
    for name in ('A.mp4', 'A_1.mp4', 'A_2.mp4'):
        (outdir / name).write_bytes(b'x')
    task = resolve(entry, outdir, ledger, False, False)
    assert task.decision == m4smerge.RENAME
    assert task.output == outdir / 'A_3.mp4'


@pytest.mark.parametrize('skip, overlay', FLAGS)
def test_resolve_reserved_path_is_renamed(entry, outdir, ledger, skip, overlay):
    reserved = {outdir / 'A.mp4', outdir / 'A_1.mp4'}
    task = resolve(entry, outdir, ledger, skip, overlay, reserved=reserved)
    assert task.decision == m4smerge.RENAME
    assert task.output == outdir / 'A_2.mp4'


def test_resolve_key_includes_subtitle(entry, outdir, ledger, tmp_path):
    record_output(ledger, entry, outdir / 'A.mp4')
    sub = tmp_path / 'danmaku.xml'
    sub.write_text('<i/>')
    task = m4smerge.resolve_output(entry, outdir / 'A.mp4', m4smerge.DuplicateClassifier(ledger),
                                   subtitle=sub)
    assert task.decision == m4smerge.RENAME
    assert task.subtitle == sub


def test_ledger_file_is_json(ledger, entry, outdir):
    record_output(ledger, entry, outdir / 'A.mp4')
    data = json.loads((outdir / m4smerge.LEDGER_NAME).read_text(encoding='utf-8'))
    assert list(data) == ['merges']
    assert len(data['merges']) == 1
