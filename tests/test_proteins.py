"""
tests/test_proteins.py

Unit tests for calculus_tools.calculus_proteins.

A miniature ontology with two namespaces is written to disk for the OBO parser
and the GO collapsing functions.
"""

import pytest
import numpy as np
import pandas as pd

from calculus_tools.calculus_proteins import (
    leading_accession,
    load_gravy,
    attach_gravy,
    sample_gravy,
    parse_obo,
    go_ancestors,
    go_depth,
    collapse_go_terms,
    go_term_counts,
)


MINI_OBO = """format-version: 1.2
ontology: go

[Term]
id: GO:0008150
name: biological_process
namespace: biological_process

[Term]
id: GO:0009987
name: cellular process
namespace: biological_process
is_a: GO:0008150 ! biological_process

[Term]
id: GO:0008152
name: metabolic process
namespace: biological_process
is_a: GO:0008150 ! biological_process

[Term]
id: GO:0044237
name: cellular metabolic process
namespace: biological_process
def: "The chemical reactions and pathways by which individual cells transform chemical substances." [GOC:go_curators]
is_a: GO:0008152 ! metabolic process
is_a: GO:0009987 ! cellular process

[Term]
id: GO:0000004
name: obsolete biological process
namespace: biological_process
is_obsolete: true

[Term]
id: GO:0003674
name: molecular_function
namespace: molecular_function

[Term]
id: GO:0005488
name: binding
namespace: molecular_function
is_a: GO:0003674 ! molecular_function

[Typedef]
id: part_of
name: part of
"""


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def ontology(tmp_path):
    path = tmp_path / 'mini.obo'
    path.write_text(MINI_OBO)
    return parse_obo(path)


@pytest.fixture
def annotations():
    return pd.DataFrame({
        'protein': ['P1', 'P2', 'P3'],
        'go_term': ['GO:0044237', 'GO:0009987', 'GO:0005488'],
    })


@pytest.fixture
def intensities():
    return pd.DataFrame({
        'S1': [5.0, 2.0, 1.0],
        'S2': [0.0, 3.0, 0.0],
    }, index=['sp|P1|PROT1_HUMAN', 'P2;P2-2', 'tr|P3|PROT3_BACT'])


# ---------------------------------------------------------------------------
# Accessions and GRAVY
# ---------------------------------------------------------------------------

class TestGravy:

    @pytest.mark.parametrize('raw, expected', [
        ('sp|P02768|ALBU_HUMAN;sp|P02769|ALBU_BOVIN', 'P02768'),
        ('tr|A0A0B4J2F0|A0A0B4J2F0_HUMAN', 'A0A0B4J2F0'),
        ('P12345;Q99999', 'P12345'),
        (' P12345 ', 'P12345'),
    ])
    def test_leading_accession(self, raw, expected):
        assert leading_accession(raw) == expected

    def test_load_gravy(self, tmp_path):
        path = tmp_path / 'gravy.csv'
        path.write_text('Accession,GRAVY\nsp|P1|PROT1_HUMAN,-0.5\nP2,0.25\nP2,9\nP3,n/a\n')
        scores = load_gravy(path)
        assert scores.name == 'GRAVY'
        assert scores['P1'] == pytest.approx(-0.5)
        assert scores['P2'] == pytest.approx(0.25)
        assert 'P3' not in scores.index

    def test_load_gravy_missing_column(self, tmp_path):
        path = tmp_path / 'gravy.csv'
        path.write_text('Accession,Score\nP1,1\n')
        with pytest.raises(ValueError, match='GRAVY'):
            load_gravy(path)

    def test_attach_gravy(self):
        report = pd.DataFrame({'Protein IDs': ['P1;P9', 'P4']})
        result = attach_gravy(report, pd.Series({'P1': 0.3}))
        assert result.loc[0, 'GRAVY'] == pytest.approx(0.3)
        assert np.isnan(result.loc[1, 'GRAVY'])

    def test_sample_gravy(self, intensities):
        scores = pd.Series({'P1': -1.0, 'P2': 1.0})
        result = sample_gravy(intensities, scores)
        assert result.name == 'Mean GRAVY'
        assert result['S1'] == pytest.approx(0.0)
        assert result['S2'] == pytest.approx(1.0)

    def test_sample_gravy_no_scored_protein(self, intensities):
        result = sample_gravy(intensities, pd.Series({'P3': 0.5}))
        assert np.isnan(result['S2'])


# ---------------------------------------------------------------------------
# OBO parsing and term depth
# ---------------------------------------------------------------------------

class TestOntology:

    def test_terms_exclude_obsolete(self, ontology):
        terms, _ = ontology
        assert 'GO:0000004' not in terms.index
        assert len(terms) == 6
        assert terms.loc['GO:0005488', 'namespace'] == 'molecular_function'

    def test_edges(self, ontology):
        _, edges = ontology
        parents = set(edges.loc[edges['term'] == 'GO:0044237', 'parent'])
        assert parents == {'GO:0008152', 'GO:0009987'}
        # Comments after '!' are not part of the ID
        assert all(' ' not in p for p in edges['parent'])

    def test_ancestors(self, ontology):
        _, edges = ontology
        assert go_ancestors('GO:0044237', edges) == {'GO:0008152', 'GO:0009987', 'GO:0008150'}
        assert go_ancestors('GO:0008150', edges) == set()

    def test_depth(self, ontology):
        terms, edges = ontology
        depth = go_depth(terms, edges)
        assert depth['GO:0008150'] == 0
        assert depth['GO:0003674'] == 0
        assert depth['GO:0009987'] == 1
        assert depth['GO:0044237'] == 2


# ---------------------------------------------------------------------------
# Collapsing annotations
# ---------------------------------------------------------------------------

class TestCollapse:

    def test_collapse_by_level(self, ontology, annotations):
        terms, edges = ontology
        collapsed = collapse_go_terms(annotations, terms, edges, level=1, namespace='biological_process')
        pairs = set(zip(collapsed['protein'], collapsed['go_term']))
        assert pairs == {('P1', 'GO:0008152'), ('P1', 'GO:0009987'), ('P2', 'GO:0009987')}
        assert list(collapsed.columns) == ['protein', 'go_term', 'name']

    def test_collapse_to_explicit_targets(self, ontology, annotations):
        terms, edges = ontology
        collapsed = collapse_go_terms(annotations, terms, edges, target_terms=['GO:0003674'])
        assert list(collapsed['protein']) == ['P3']
        assert collapsed.loc[0, 'name'] == 'molecular_function'

    def test_collapse_needs_targets_or_level(self, ontology, annotations):
        terms, edges = ontology
        with pytest.raises(ValueError, match='target_terms or level'):
            collapse_go_terms(annotations, terms, edges)

    def test_collapse_missing_column(self, ontology, annotations):
        terms, edges = ontology
        with pytest.raises(ValueError, match='accession'):
            collapse_go_terms(annotations, terms, edges, level=1, protein_column='accession')

    def test_term_counts(self, ontology, annotations, intensities):
        terms, edges = ontology
        collapsed = collapse_go_terms(annotations, terms, edges, level=1, namespace='biological_process')
        counts = go_term_counts(collapsed, intensities)
        assert list(counts.columns) == ['S1', 'S2']
        assert counts.loc['GO:0009987', 'S1'] == 2
        assert counts.loc['GO:0009987', 'S2'] == 1
        assert counts.loc['GO:0008152', 'S2'] == 0
