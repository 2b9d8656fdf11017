"""
Loading and cleaning functions for dental calculus instrument exports.
"""

import os
import re

import pandas as pd
import numpy as np

from .logger import log_print


def read_table(filepath, sheet_name=0, sep=None):
    """
    Read a delimited text file or spreadsheet into a DataFrame.

    Parameters:
    -----------
    filepath : str or Path
        Path to a .csv, .tsv, .txt, .xlsx or .xls file
    sheet_name : str or int
        Sheet to read from spreadsheets
    sep : str, optional
        Delimiter override for text files

    Returns:
    --------
    pandas.DataFrame
        Table as read, without an index set
    """
    filepath = str(filepath)
    if not os.path.exists(filepath):
        raise FileNotFoundError(f"Input file not found: {filepath}")

    extension = os.path.splitext(filepath)[1].lower()

    if extension in ('.xlsx', '.xls'):
        return pd.read_excel(filepath, sheet_name=sheet_name, engine='openpyxl' if extension == '.xlsx' else None)
    if extension == '.csv':
        return pd.read_csv(filepath, sep=sep or ',')
    if extension in ('.tsv', '.txt', '.tab'):
        return pd.read_csv(filepath, sep=sep or '\t', low_memory=False)

    raise ValueError(f"Unsupported file type '{extension}' for {filepath}")


def load_metadata(filepath, sample_id_column='SampleID'):
    """
    Load per-sample metadata.

    Parameters:
    -----------
    filepath : str
        Path to the metadata file
    sample_id_column : str
        Column name for sample IDs

    Returns:
    --------
    pandas.DataFrame
        Metadata DataFrame with sample IDs as index
    """
    metadata_df = read_table(filepath)

    if sample_id_column not in metadata_df.columns:
        raise ValueError(f"Sample ID column '{sample_id_column}' not found in metadata")

    metadata_df[sample_id_column] = metadata_df[sample_id_column].astype(str).str.strip()
    metadata_df = metadata_df.set_index(sample_id_column)

    if metadata_df.index.duplicated().any():
        log_print(f"Found {metadata_df.index.duplicated().sum()} duplicate sample IDs in metadata, keeping first",
                  level="warning")
        metadata_df = metadata_df[~metadata_df.index.duplicated(keep='first')]

    # Convert categorical variables to string
    for col in metadata_df.columns:
        if metadata_df[col].dtype == 'object' or metadata_df[col].dtype.name == 'category':
            metadata_df[col] = metadata_df[col].astype(str)

    return metadata_df


def strip_sample_suffix(sample_id, patterns):
    """Remove the first matching technical suffix from a sample identifier."""
    sample_id = str(sample_id).strip()
    for pattern in patterns:
        cleaned = re.sub(pattern, '', sample_id)
        if cleaned != sample_id and cleaned:
            return cleaned
    return sample_id


def clean_sample_ids(df, patterns, axis='columns', aggfunc='sum'):
    """
    Strip technical suffixes from sample labels.

    Labels that collapse onto the same sample (lane splits, repeated runs of
    one library) are combined with ``aggfunc``.

    Parameters:
    -----------
    df : pandas.DataFrame
        Table with samples on the given axis
    patterns : list of str
        Regular expressions matching suffixes, tried in order
    axis : str
        'columns' when samples are columns, 'index' when samples are rows
    aggfunc : str
        'sum' for counts, 'mean' for per-sample metrics

    Returns:
    --------
    pandas.DataFrame
        Table with cleaned sample labels
    """
    if axis not in ('columns', 'index'):
        raise ValueError(f"axis must be 'columns' or 'index', got '{axis}'")
    if aggfunc not in ('sum', 'mean'):
        raise ValueError(f"aggfunc must be 'sum' or 'mean', got '{aggfunc}'")

    # Work with samples as rows so that per-column dtypes survive
    rows = df.T if axis == 'columns' else df
    cleaned = pd.Index([strip_sample_suffix(label, patterns) for label in rows.index], name=rows.index.name)

    if cleaned.duplicated().any():
        merged_ids = sorted(set(cleaned[cleaned.duplicated()]))
        log_print(f"Combining technical replicates for {len(merged_ids)} samples: {', '.join(merged_ids)}", level="info")
        grouped = rows.groupby(cleaned, sort=False)
        numeric_cols = rows.select_dtypes(include='number').columns
        other_cols = rows.columns.difference(numeric_cols, sort=False)
        if len(other_cols) == 0:
            rows = getattr(grouped, aggfunc)()
        else:
            # Non-numeric annotations (library, run) keep the first replicate's value
            combined = getattr(grouped[list(numeric_cols)], aggfunc)()
            rows = combined.join(grouped[list(other_cols)].first())[list(rows.columns)]
        rows.index.name = cleaned.name
    else:
        rows = rows.copy()
        rows.index = cleaned

    return rows.T if axis == 'columns' else rows


def load_read_counts(filepath, taxon_column=None):
    """
    Load a taxon-by-sample read count table exported from MEGAN/MALT.

    Parameters:
    -----------
    filepath : str or Path
        Path to the exported table
    taxon_column : str, optional
        Column holding taxon names (default: first column)

    Returns:
    --------
    pandas.DataFrame
        Read counts with taxa as index, samples as columns
    """
    counts = read_table(filepath)
    taxon_column = taxon_column or counts.columns[0]

    if taxon_column not in counts.columns:
        raise ValueError(f"Taxon column '{taxon_column}' not found in {filepath}")

    counts = counts.set_index(taxon_column)
    counts.index = counts.index.astype(str).str.strip()
    counts.index.name = 'Taxon'
    counts.columns = counts.columns.astype(str).str.strip()

    for col in counts.columns:
        counts[col] = pd.to_numeric(counts[col], errors='coerce')
    counts = counts.fillna(0)

    if counts.index.duplicated().any():
        counts = counts.groupby(level=0, sort=False).sum()

    log_print(f"Loaded read counts: {counts.shape[0]} taxa, {counts.shape[1]} samples", level="info")
    return counts


def _load_maxquant_report(filepath, intensity_prefix, kind):
    report = read_table(filepath)
    sample_columns = [c for c in report.columns if str(c).startswith(intensity_prefix)]
    if not sample_columns:
        raise ValueError(f"No '{intensity_prefix}<sample>' columns found in {kind} report {filepath}")
    log_print(f"Loaded {kind} report: {len(report)} rows, {len(sample_columns)} samples", level="info")
    return report


def load_protein_groups(filepath, intensity_prefix='Intensity '):
    """Load a MaxQuant-style proteinGroups report."""
    return _load_maxquant_report(filepath, intensity_prefix, 'protein')


def load_peptides(filepath, intensity_prefix='Intensity '):
    """Load a MaxQuant-style peptides report."""
    return _load_maxquant_report(filepath, intensity_prefix, 'peptide')


def extract_sample_matrix(report, prefix, id_column):
    """
    Pull per-sample columns out of a wide instrument report.

    Parameters:
    -----------
    report : pandas.DataFrame
        Report with one row per feature and '<prefix><sample>' columns
    prefix : str
        Column prefix, e.g. 'Intensity '
    id_column : str
        Column used as the feature index

    Returns:
    --------
    pandas.DataFrame
        Numeric feature x sample matrix, prefix removed from sample names
    """
    if id_column not in report.columns:
        raise ValueError(f"ID column '{id_column}' not found in report")

    sample_columns = [c for c in report.columns if str(c).startswith(prefix)]
    matrix = report.set_index(id_column)[sample_columns].apply(pd.to_numeric, errors='coerce').fillna(0)
    matrix.columns = [str(c)[len(prefix):].strip() for c in sample_columns]
    return matrix


def load_alignment_report(filepath, sample_column='Sample'):
    """
    Load a per-sample alignment quality summary.

    Parameters:
    -----------
    filepath : str or Path
        Path to the summary table
    sample_column : str
        Column holding sample names

    Returns:
    --------
    pandas.DataFrame
        Metrics with samples as index
    """
    report = read_table(filepath)
    if sample_column not in report.columns:
        raise ValueError(f"Sample column '{sample_column}' not found in alignment report")

    report[sample_column] = report[sample_column].astype(str).str.strip()
    report = report.set_index(sample_column)

    if 'endogenous_pct' not in report.columns and {'total_reads', 'mapped_reads'} <= set(report.columns):
        total = pd.to_numeric(report['total_reads'], errors='coerce')
        mapped = pd.to_numeric(report['mapped_reads'], errors='coerce')
        report['endogenous_pct'] = (mapped / total.replace(0, np.nan)) * 100

    return report


def load_contaminant_list(filepath):
    """Read a contaminant taxon list, one name per line."""
    with open(filepath, 'r') as f:
        names = [line.split('#', 1)[0].strip() for line in f]
    return [name for name in names if name]


def remove_contaminant_taxa(abundance_df, contaminants):
    """
    Drop taxa flagged as laboratory or environmental contaminants.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Taxa as index, samples as columns
    contaminants : iterable of str
        Taxon names to remove (case-insensitive)

    Returns:
    --------
    pandas.DataFrame
        Abundance table without contaminant taxa
    """
    contaminant_set = {str(name).strip().lower() for name in contaminants}
    if not contaminant_set:
        return abundance_df.copy()

    is_contaminant = abundance_df.index.to_series().astype(str).str.strip().str.lower().isin(contaminant_set)
    removed_reads = abundance_df.loc[is_contaminant.values].to_numpy().sum()

    log_print(f"Removing {int(is_contaminant.sum())} contaminant taxa ({removed_reads:.0f} reads)", level="info")
    return abundance_df.loc[~is_contaminant.values].copy()


def _is_flagged(value):
    return str(value).strip() == '+'


def remove_decoy_hits(report, id_column='Protein IDs', decoy_prefixes=('REV__',),
                      contaminant_prefixes=('CON__',),
                      flag_columns=('Reverse', 'Potential contaminant', 'Only identified by site')):
    """
    Remove reverse-database decoys and common contaminants from a MaxQuant report.

    A row is dropped when any flag column holds '+', or when every accession in
    its ';'-separated ID list starts with a decoy or contaminant prefix.

    Parameters:
    -----------
    report : pandas.DataFrame
        proteinGroups or peptides report
    id_column : str
        Column with ';'-separated protein accessions
    decoy_prefixes : tuple of str
        Prefixes marking reverse-database hits
    contaminant_prefixes : tuple of str
        Prefixes marking contaminant database hits
    flag_columns : tuple of str
        Columns where '+' marks a row for removal; absent columns are ignored

    Returns:
    --------
    pandas.DataFrame
        Filtered report
    """
    if id_column not in report.columns:
        raise ValueError(f"ID column '{id_column}' not found in report")

    drop = pd.Series(False, index=report.index)

    for col in flag_columns:
        if col in report.columns:
            drop |= report[col].map(_is_flagged)

    prefixes = tuple(decoy_prefixes) + tuple(contaminant_prefixes)
    if prefixes:
        def all_excluded(protein_ids):
            accessions = [a.strip() for a in str(protein_ids).split(';') if a.strip()]
            return bool(accessions) and all(a.startswith(prefixes) for a in accessions)

        drop |= report[id_column].map(all_excluded)

    log_print(f"Removed {int(drop.sum())} decoy/contaminant rows, {int((~drop).sum())} remain", level="info")
    return report.loc[~drop].copy()


def exclude_individuals(metadata_df, individuals, individual_column='Individual'):
    """
    Drop every sample belonging to the excluded individuals.

    Parameters:
    -----------
    metadata_df : pandas.DataFrame
        Metadata with samples as index
    individuals : iterable of str
        Individuals to exclude
    individual_column : str
        Metadata column identifying the individual

    Returns:
    --------
    pandas.DataFrame
        Metadata without the excluded individuals' samples
    """
    individuals = [str(i) for i in (individuals or [])]
    if not individuals:
        return metadata_df.copy()

    if individual_column not in metadata_df.columns:
        raise ValueError(f"Individual column '{individual_column}' not found in metadata")

    excluded = metadata_df[individual_column].astype(str).isin(individuals)
    log_print(f"Excluding {int(excluded.sum())} samples from individual(s) {', '.join(individuals)}", level="info")
    return metadata_df.loc[~excluded].copy()


def join_metadata(table, metadata_df, sample_axis='columns'):
    """
    Restrict a data table and the metadata to their common samples.

    Parameters:
    -----------
    table : pandas.DataFrame
        Data with samples as columns or as index
    metadata_df : pandas.DataFrame
        Metadata with samples as index
    sample_axis : str
        'columns' or 'index', where the samples are in ``table``

    Returns:
    --------
    tuple of (pandas.DataFrame, pandas.DataFrame)
        Table and metadata, both ordered as the metadata
    """
    if sample_axis not in ('columns', 'index'):
        raise ValueError(f"sample_axis must be 'columns' or 'index', got '{sample_axis}'")

    samples = table.columns if sample_axis == 'columns' else table.index
    samples = samples.astype(str)

    common_samples = [s for s in metadata_df.index.astype(str) if s in set(samples)]
    missing = sorted(set(samples) - set(metadata_df.index.astype(str)))

    if missing:
        log_print(f"{len(missing)} samples have no metadata and are dropped: {', '.join(missing)}", level="warning")
    if not common_samples:
        raise ValueError("No samples in common between data table and metadata")

    log_print(f"Samples with both data and metadata: {len(common_samples)}", level="info")

    table = table.copy()
    if sample_axis == 'columns':
        table.columns = samples
        joined = table[common_samples]
    else:
        table.index = samples
        joined = table.loc[common_samples]

    metadata = metadata_df.copy()
    metadata.index = metadata.index.astype(str)
    return joined, metadata.loc[common_samples]


def to_relative_abundance(abundance_df, scale=100):
    """Normalize each sample (column) to sum to ``scale``; empty samples stay zero."""
    abundance_df = abundance_df.fillna(0)
    sample_sums = abundance_df.sum(axis=0)
    return abundance_df.div(sample_sums.replace(0, np.nan), axis=1).fillna(0) * scale


def filter_low_abundance(abundance_df, min_prevalence=0.1, min_abundance=0.01):
    """
    Filter out low abundance and low prevalence taxa.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Taxa abundance DataFrame with taxa as index, samples as columns
    min_prevalence : float
        Minimum fraction of samples in which a taxon must be present
    min_abundance : float
        Minimum mean relative abundance a taxon must have

    Returns:
    --------
    pandas.DataFrame
        Filtered abundance DataFrame
    """
    prevalence = (abundance_df > 0).mean(axis=1)
    mean_abundance = abundance_df.mean(axis=1)

    keep_taxa = (prevalence >= min_prevalence) & (mean_abundance >= min_abundance)

    log_print(f"Filtering from {len(abundance_df)} to {int(keep_taxa.sum())} taxa "
              f"(prevalence >= {min_prevalence:.2f}, mean abundance >= {min_abundance:.4f})", level="info")

    return abundance_df.loc[keep_taxa]


def count_identifications(matrix, min_value=0):
    """Number of features detected (value above ``min_value``) in each sample."""
    return (matrix > min_value).sum(axis=0).rename('Identifications')
