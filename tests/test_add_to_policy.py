# Copyright (C) 2026 Linuxfabrik <info@linuxfabrik.ch>
#
# This program is free software; you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation; either version 2 of the License, or
# (at your option) any later version.
#
# On Debian systems, the complete text of the GNU General Public License
# version 2 can be found in /usr/share/common-licenses/GPL-2.
#
# SPDX-License-Identifier: GPL-2.0-or-later

"""Tests for augmenting object references in policy files."""

import textwrap

import pytest

from policyfabrik import patch
from policyfabrik.cli import add_to_policy

PAIRS = {'network:n1': 'network:x'}


def _process(text, pairs=PAIRS):
    return patch.process(textwrap.dedent(text), pairs)


class TestNames:
    @pytest.mark.parametrize(
        ('name', 'match'),
        [
            ('n1', 'Missing type in n1'),
            ('router:r1', "Can't use type in router:r1"),
            ('network:a;b', "Invalid character ';' in network:a;b"),
        ],
    )
    def test_check_name(self, name, match):
        with pytest.raises(patch.PatchError, match=match):
            patch.check_name(name)

    def test_build_pairs(self):
        assert patch.build_pairs(['network:n1', 'host:h1', 'any:a', 'any:b']) == {
            'network:n1': 'host:h1',
            'any:a': 'any:b',
        }

    def test_build_pairs_odd(self):
        with pytest.raises(patch.PatchError, match="Missing 2nd. element for 'any:a'"):
            patch.build_pairs(['network:n1', 'host:h1', 'any:a'])

    def test_read_pairs(self, tmp_path):
        path = tmp_path / 'pairs'
        path.write_text('network:n1 network:x\n\nhost:h1\thost:h2\n', encoding='utf-8')
        assert patch.read_pairs(path) == {
            'network:n1': 'network:x',
            'host:h1': 'host:h2',
        }

    def test_read_pairs_empty(self, tmp_path):
        path = tmp_path / 'pairs'
        path.write_text('\n', encoding='utf-8')
        with pytest.raises(patch.PatchError, match='Missing pairs'):
            patch.read_pairs(path)


class TestProcess:
    def test_block_list(self):
        count, text, warnings = _process(
            """\
            groups:
              - name: g
                members:
                  - network:n1
                  - network:n2
            """
        )
        assert count == 1
        assert warnings == []
        assert text == textwrap.dedent(
            """\
            groups:
              - name: g
                members:
                  - network:n1
                  - network:x
                  - network:n2
            """
        )

    def test_block_list_with_comment(self):
        _, text, _ = _process(
            """\
            members:
              - network:n1  # office
            """
        )
        assert text == 'members:\n  - network:n1  # office\n  - network:x\n'

    def test_flow_list(self):
        count, text, _ = patch.process('    src: [network:n2, network:n1]\n', PAIRS)
        assert count == 1
        assert text == '    src: [network:n2, network:n1, network:x]\n'

    def test_multi_line_flow_list(self):
        _, text, _ = _process(
            """\
            dst: [
              network:n1,
              network:n2
            ]
            """
        )
        assert text == 'dst: [\n  network:n1,\n  network:x,\n  network:n2\n]\n'

    def test_scalar_becomes_list(self):
        _, text, _ = patch.process('    dst: network:n1  # db\n', PAIRS)
        assert text == '    dst: [network:n1, network:x]  # db\n'

    def test_scalar_in_flow_mapping(self):
        _, text, _ = patch.process(
            '  - {name: r, src: network:n1, dst: network:n2, prt: tcp 80}\n', PAIRS
        )
        assert text == (
            '  - {name: r, src: [network:n1, network:x], dst: network:n2, prt: tcp 80}\n'
        )

    def test_only_list_contexts_are_changed(self):
        source = (
            'networks:\n'
            '  - {name: n1, ip: 10.1.1.0/24}\n'
            'areas:\n'
            '  - {name: a, anchor: network:n1}\n'
            '# src: network:n1\n'
        )
        count, text, _ = patch.process(source, PAIRS)
        assert count == 0
        assert text == source

    def test_all_interfaces(self):
        _, text, _ = patch.process(
            'dst: [interface:r1.[all]]\n',
            {'interface:r1.[all]': 'interface:r2.[all]'},
        )
        assert text == 'dst: [interface:r1.[all], interface:r2.[all]]\n'

    def test_intersection_warning(self):
        count, _, warnings = patch.process(
            'members: group:a & group:b\n', {'group:a': 'group:c'}
        )
        assert count == 1
        assert warnings == ['Substituted in intersection']


class TestProcessPath:
    def test_only_changed_files_are_written(self, tmp_path):
        (tmp_path / 'rules.yaml').write_text(
            'rules:\n  - {name: r, src: network:n1, dst: network:n2}\n',
            encoding='utf-8',
        )
        other = tmp_path / 'other.yaml'
        other.write_text('networks: []\n', encoding='utf-8')
        (tmp_path / 'raw').mkdir()
        raw = tmp_path / 'raw' / 'r1'
        raw.write_text('members: network:n1\n', encoding='utf-8')
        (tmp_path / '.hidden').write_text('src: network:n1\n', encoding='utf-8')

        results = patch.process_path(tmp_path, PAIRS)
        assert [(path.name, count) for path, count, _ in results] == [('rules.yaml', 1)]
        assert 'network:x' in (tmp_path / 'rules.yaml').read_text(encoding='utf-8')
        assert raw.read_text(encoding='utf-8') == 'members: network:n1\n'
        assert (tmp_path / '.hidden').read_text(encoding='utf-8') == 'src: network:n1\n'

    def test_single_file(self, tmp_path):
        path = tmp_path / 'policy.yaml'
        path.write_text('members: [network:n1]\n', encoding='utf-8')
        results = patch.process_path(path, PAIRS)
        assert [count for _, count, _ in results] == [1]


class TestCli:
    def test_pairs_from_arguments(self, tmp_path, capsys):
        path = tmp_path / 'policy.yaml'
        path.write_text('members: [network:n1]\n', encoding='utf-8')
        assert add_to_policy.main([str(path), 'network:n1', 'network:x']) == 0
        assert path.read_text(encoding='utf-8') == 'members: [network:n1, network:x]\n'
        assert f'1 changes in {path}' in capsys.readouterr().err

    def test_pairs_from_file(self, tmp_path, capsys):
        path = tmp_path / 'policy.yaml'
        path.write_text('src: network:n1\n', encoding='utf-8')
        pairs = tmp_path / 'pairs'
        pairs.write_text('network:n1 host:h1\n', encoding='utf-8')
        assert add_to_policy.main(['-q', '-f', str(pairs), str(path)]) == 0
        assert path.read_text(encoding='utf-8') == 'src: [network:n1, host:h1]\n'
        assert capsys.readouterr().err == ''

    def test_invalid_pair(self, tmp_path, capsys):
        assert add_to_policy.main([str(tmp_path), 'network:n1']) == 1
        assert "Missing 2nd. element for 'network:n1'" in capsys.readouterr().err
