"""
Protein annotation helpers: GRAVY hydropathy scores and Gene Ontology collapsing.
"""

from collections import deque

import pandas as pd
import numpy as np

from .calculus_utils import read_table
from .logger import log_print


def leading_accession(protein_ids):
    """
    Return the first accession of a protein group.

    'sp|P02768|ALBU_HUMAN;sp|P02769|ALBU_BOVIN' -> 'P02768'
    """
    first = str(protein_ids).split(';')[0].strip()
    parts = first.split('|')
    if len(parts) >= 3 and parts[0] in ('sp', 'tr'):
        return parts[1]
    return first


def load_gravy(filepath, id_column='Accession', score_column='GRAVY'):
    """
    Load GRAVY scores exported from an external hydropathy calculator.

    Parameters:
    -----------
    filepath : str or Path
        Table with one row per protein
    id_column : str
        Column with protein accessions or FASTA headers
    score_column : str
        Column with the GRAVY score

    Returns:
    --------
    pandas.Series
        GRAVY score indexed by accession
    """
    gravy_df = read_table(filepath)
    for col in (id_column, score_column):
        if col not in gravy_df.columns:
            raise ValueError(f"Column '{col}' not found in GRAVY table")

    scores = pd.Series(
        pd.to_numeric(gravy_df[score_column], errors='coerce').values,
        index=gravy_df[id_column].map(leading_accession),
        name='GRAVY',
    )
    return scores[~scores.index.duplicated(keep='first')].dropna()


def attach_gravy(report, gravy_scores, id_column='Protein IDs'):
    """Add a 'GRAVY' column to a protein report, matched on the leading accession."""
    report = report.copy()
    accessions = report[id_column].map(leading_accession)
    report['GRAVY'] = accessions.map(gravy_scores).astype(float)

    n_missing = int(report['GRAVY'].isna().sum())
    if n_missing:
        log_print(f"{n_missing} of {len(report)} proteins have no GRAVY score", level="warning")

    return report


def sample_gravy(matrix, gravy_scores):
    """
    Mean GRAVY score of the proteins detected in each sample.

    Parameters:
    -----------
    matrix : pandas.DataFrame
        Protein x sample intensities, indexed by protein group IDs
    gravy_scores : pandas.Series
        GRAVY score by accession

    Returns:
    --------
    pandas.Series
        Mean GRAVY per sample (NaN when no scored protein is detected)
    """
    scores = pd.Series(matrix.index.map(leading_accession), index=matrix.index).map(gravy_scores)
    detected = matrix > 0

    result = {}
    for sample in matrix.columns:
        sample_scores = scores[detected[sample].values].dropna()
        result[sample] = sample_scores.mean() if len(sample_scores) else np.nan

    return pd.Series(result, name='Mean GRAVY')


def parse_obo(filepath):
    """
    Read the terms and is_a relations of an OBO ontology file.

    Parameters:
    -----------
    filepath : str or Path
        Path to e.g. go-basic.obo

    Returns:
    --------
    tuple of (pandas.DataFrame, pandas.DataFrame)
        Terms (index term; columns name, namespace) and edges (term, parent)
    """
    terms = []
    edges = []
    current = None

    def flush(stanza):
        if stanza is None or stanza.get('obsolete') or 'id' not in stanza:
            return
        terms.append({'term': stanza['id'], 'name': stanza.get('name', ''),
                      'namespace': stanza.get('namespace', '')})
        edges.extend({'term': stanza['id'], 'parent': parent} for parent in stanza['is_a'])

    with open(filepath, 'r') as f:
        for line in f:
            line = line.strip()
            if line.startswith('['):
                flush(current)
                current = {'is_a': []} if line == '[Term]' else None
                continue
            if current is None or ':' not in line:
                continue

            key, value = line.split(':', 1)
            value = value.split('!', 1)[0].strip()

            if key == 'is_a':
                current['is_a'].append(value)
            elif key == 'is_obsolete':
                current['obsolete'] = value == 'true'
            elif key in ('id', 'name', 'namespace'):
                current[key] = value
    flush(current)

    terms_df = pd.DataFrame(terms, columns=['term', 'name', 'namespace']).set_index('term')
    edges_df = pd.DataFrame(edges, columns=['term', 'parent'])
    # Drop edges pointing to obsolete or missing parents
    edges_df = edges_df[edges_df['parent'].isin(terms_df.index)].reset_index(drop=True)

    log_print(f"Parsed {len(terms_df)} ontology terms and {len(edges_df)} is_a relations", level="info")
    return terms_df, edges_df


def _parent_map(edges):
    return edges.groupby('term')['parent'].apply(list).to_dict()


def go_ancestors(term, edges):
    """All ancestors of ``term`` following is_a relations (term itself excluded)."""
    parents = edges if isinstance(edges, dict) else _parent_map(edges)

    seen = set()
    queue = deque(parents.get(term, []))
    while queue:
        parent = queue.popleft()
        if parent in seen:
            continue
        seen.add(parent)
        queue.extend(parents.get(parent, []))
    return seen


def go_depth(terms, edges):
    """
    Minimum number of is_a steps from each term to a root of its namespace.

    Returns:
    --------
    pandas.Series
        Depth by term; roots have depth 0
    """
    children = edges.groupby('parent')['term'].apply(list).to_dict()
    has_parent = set(edges['term'])
    roots = [t for t in terms.index if t not in has_parent]

    depth = {root: 0 for root in roots}
    queue = deque(roots)
    while queue:
        term = queue.popleft()
        for child in children.get(term, []):
            if child not in depth:
                depth[child] = depth[term] + 1
                queue.append(child)

    return pd.Series(depth, name='depth').reindex(terms.index)


def collapse_go_terms(annotations, terms, edges, target_terms=None, level=None, namespace=None,
                      protein_column='protein', term_column='go_term'):
    """
    Map protein GO annotations onto a set of higher-level terms.

    Every annotated term is replaced by the target terms that equal it or
    are among its ancestors. Targets are given explicitly or as all terms at
    ``level`` steps below the namespace root.

    Parameters:
    -----------
    annotations : pandas.DataFrame
        One row per (protein, GO term) annotation
    terms : pandas.DataFrame
        Term table from ``parse_obo``
    edges : pandas.DataFrame
        is_a edges from ``parse_obo``
    target_terms : list of str, optional
        Terms to collapse onto
    level : int, optional
        Depth of the target terms when ``target_terms`` is not given
    namespace : str, optional
        Restrict targets to one namespace, e.g. 'biological_process'
    protein_column : str
        Annotation column with protein accessions
    term_column : str
        Annotation column with GO IDs

    Returns:
    --------
    pandas.DataFrame
        Unique (protein, collapsed term) rows with the collapsed term's name
    """
    for col in (protein_column, term_column):
        if col not in annotations.columns:
            raise ValueError(f"Column '{col}' not found in annotations")

    if target_terms:
        targets = set(target_terms)
    elif level is not None:
        depth = go_depth(terms, edges)
        targets = set(depth[depth == level].index)
    else:
        raise ValueError("Either target_terms or level must be given")

    if namespace is not None:
        targets = {t for t in targets if t in terms.index and terms.loc[t, 'namespace'] == namespace}

    parents = _parent_map(edges)
    lineage_cache = {}

    rows = []
    for protein, term in annotations[[protein_column, term_column]].itertuples(index=False):
        if term not in lineage_cache:
            lineage_cache[term] = ({term} | go_ancestors(term, parents)) & targets
        for collapsed in lineage_cache[term]:
            rows.append({'protein': protein, 'go_term': collapsed})

    collapsed_df = pd.DataFrame(rows, columns=['protein', 'go_term']).drop_duplicates()
    collapsed_df['name'] = collapsed_df['go_term'].map(terms['name']) if len(terms) else ''

    log_print(f"Collapsed {len(annotations)} annotations onto {collapsed_df['go_term'].nunique()} terms",
              level="info")
    return collapsed_df.sort_values(['go_term', 'protein']).reset_index(drop=True)


def go_term_counts(collapsed, matrix):
    """
    Number of detected proteins per collapsed GO term in each sample.

    Parameters:
    -----------
    collapsed : pandas.DataFrame
        Output of ``collapse_go_terms``
    matrix : pandas.DataFrame
        Protein x sample intensities indexed by protein group IDs

    Returns:
    --------
    pandas.DataFrame
        GO term x sample counts
    """
    detected = (matrix > 0).astype(int)
    detected.index = detected.index.map(leading_accession)
    detected = detected.groupby(level=0).max()

    merged = collapsed.merge(detected, left_on='protein', right_index=True, how='inner')
    counts = merged.groupby('go_term')[list(matrix.columns)].sum()

    return counts.reindex(columns=matrix.columns, fill_value=0)
