import gzip
import json

from geckoproc import cli
from geckoproc.config import CONFIG_ENV_VAR
from geckoproc.constants import GECKO_PROFILE_VERSION


def _write_profile(tmp_path, profile, compress=False):
    data = json.dumps(profile).encode()
    if compress:
        path = tmp_path / 'profile.json.gz'
        path.write_bytes(gzip.compress(data))
    else:
        path = tmp_path / 'profile.json'
        path.write_bytes(data)
    return path


def test_convert_to_file(tmp_path, monkeypatch, two_process_v3_profile):
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
    input_path = _write_profile(tmp_path, two_process_v3_profile)
    output_path = tmp_path / 'processed.json'

    assert cli.run([str(input_path), '-o', str(output_path)]) == 0

    processed = json.loads(output_path.read_text())
    assert processed['meta']['version'] == GECKO_PROFILE_VERSION
    assert len(processed['threads']) == 2
    assert len(processed['libs']) == 3


def test_convert_gzipped_profile_to_stdout(tmp_path, monkeypatch, capsys,
                                           two_process_v3_profile):
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
    input_path = _write_profile(tmp_path,
                                {'profile': two_process_v3_profile},
                                compress=True)

    assert cli.run([str(input_path)]) == 0

    processed = json.loads(capsys.readouterr().out)
    assert [t['name'] for t in processed['threads']
           ] == ['GeckoMain', 'GeckoMain']


def test_upgrade_only(tmp_path, monkeypatch, two_process_v3_profile):
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
    input_path = _write_profile(tmp_path, two_process_v3_profile)
    output_path = tmp_path / 'upgraded.json'

    assert cli.run(
        [str(input_path), '--upgrade-only', '-o',
         str(output_path)]) == 0

    upgraded = json.loads(output_path.read_text())
    assert upgraded['meta']['version'] == GECKO_PROFILE_VERSION
    # Still the raw format: tuple tables and subprocesses.
    assert 'schema' in upgraded['threads'][0]['samples']
    assert len(upgraded['processes']) == 1


def test_invalid_profile_exits_with_error(tmp_path, monkeypatch):
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
    input_path = _write_profile(tmp_path, {'threads': []})
    output_path = tmp_path / 'processed.json'

    assert cli.run([str(input_path), '-o', str(output_path),
                    '--verbose']) == 1
    assert not output_path.exists()
