"""
Protein parsimony for reconciling peptide -> protein assignments across replicates.

Each replicate's search assigns master proteins independently, so the same
peptide sequence can end up under different accessions in different
replicates. Pooling all replicates' peptide -> protein evidence and resolving
it once yields a single consistent ProteinAssignment.

Algorithm:
1. Merge proteins with identical peptide sets (indistinguishable)
2. Greedy minimal set cover: repeatedly select the group explaining the most
   not-yet-explained peptides
3. Groups adding no new peptides are subsumed into the selected group they
   overlap most
4. Shared peptides are assigned (razor) to the selected group with the most
   unique peptides
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

import pandas as pd

logger = logging.getLogger(__name__)


@dataclass
class ProteinGroup:
    """A set of proteins explaining a set of peptides."""
    group_id: str
    leading_protein: str
    leading_protein_name: str
    member_proteins: List[str]
    subsumed_proteins: List[str]
    peptides: Set[str]                # unique + razor peptides owned by this group
    unique_peptides: Set[str]
    razor_peptides: Set[str]
    shared_peptides: Set[str] = field(default_factory=set)  # razor-assigned elsewhere

    @property
    def n_peptides(self) -> int:
        return len(self.peptides)

    @property
    def n_unique_peptides(self) -> int:
        return len(self.unique_peptides)

    @property
    def n_razor_peptides(self) -> int:
        return len(self.razor_peptides)

    @property
    def proteins(self) -> List[str]:
        return list(self.member_proteins) + list(self.subsumed_proteins)

    def to_dict(self) -> dict:
        """Flat representation for export."""
        return {
            'GroupID': self.group_id,
            'LeadingProtein': self.leading_protein,
            'LeadingName': self.leading_protein_name,
            'MemberProteins': ';'.join(self.member_proteins),
            'SubsumedProteins': ';'.join(self.subsumed_proteins),
            'NPeptides': self.n_peptides,
            'NUniquePeptides': self.n_unique_peptides,
            'NRazorPeptides': self.n_razor_peptides,
            'Peptides': ';'.join(sorted(self.peptides)),
        }


def _split_proteins(value, separator: str) -> List[str]:
    if pd.isna(value):
        return []
    return [p.strip() for p in re.split(re.escape(separator.strip()), str(value)) if p.strip()]


def build_peptide_protein_map(
    df: pd.DataFrame,
    peptide_col: str = 'peptide_sequence',
    protein_col: str = 'protein_ids',
    name_col: Optional[str] = 'protein_names',
    separator: str = ';',
) -> Tuple[Dict[str, Set[str]], Dict[str, Set[str]], Dict[str, str]]:
    """
    Build bidirectional peptide <-> protein maps.

    Protein cells may hold several accessions joined by ``separator``.

    Returns:
        Tuple of (peptide -> proteins, protein -> peptides, protein -> name)
    """
    pep_to_prot: Dict[str, Set[str]] = {}
    prot_to_pep: Dict[str, Set[str]] = {}
    prot_to_name: Dict[str, str] = {}

    use_names = name_col is not None and name_col in df.columns
    columns = [peptide_col, protein_col] + ([name_col] if use_names else [])

    for row in df[columns].drop_duplicates().itertuples(index=False):
        peptide = row[0]
        if pd.isna(peptide):
            continue
        proteins = _split_proteins(row[1], separator)
        names = _split_proteins(row[2], separator) if use_names else []

        for i, protein in enumerate(proteins):
            pep_to_prot.setdefault(peptide, set()).add(protein)
            prot_to_pep.setdefault(protein, set()).add(peptide)
            if protein not in prot_to_name:
                prot_to_name[protein] = names[i] if i < len(names) else protein

    logger.debug(f"Mapped {len(pep_to_prot)} peptides to {len(prot_to_pep)} proteins")
    return pep_to_prot, prot_to_pep, prot_to_name


def compute_protein_groups(
    prot_to_pep: Dict[str, Set[str]],
    pep_to_prot: Dict[str, Set[str]],
    prot_to_name: Optional[Dict[str, str]] = None,
) -> List[ProteinGroup]:
    """
    Resolve proteins into a minimal set of groups explaining every peptide.

    Args:
        prot_to_pep: protein -> peptides
        pep_to_prot: peptide -> proteins
        prot_to_name: protein -> display name

    Returns:
        List of ProteinGroup ordered by leading protein
    """
    prot_to_name = prot_to_name or {}

    # 1. Indistinguishable proteins share one candidate
    by_peptides: Dict[frozenset, List[str]] = {}
    for protein, peptides in prot_to_pep.items():
        by_peptides.setdefault(frozenset(peptides), []).append(protein)
    candidates = {
        min(members): (sorted(members), set(peptides))
        for peptides, members in by_peptides.items()
    }

    # 2. Greedy set cover
    uncovered: Set[str] = set(pep_to_prot)
    selected: List[str] = []
    remaining = set(candidates)
    while uncovered and remaining:
        best = min(
            remaining,
            key=lambda c: (-len(candidates[c][1] & uncovered), -len(candidates[c][1]), c),
        )
        gain = candidates[best][1] & uncovered
        if not gain:
            break
        selected.append(best)
        uncovered -= gain
        remaining.discard(best)

    # 3. Everything not selected is subsumed by its largest-overlap selected group
    subsumed: Dict[str, List[str]] = {c: [] for c in selected}
    for cand in sorted(remaining):
        peptides = candidates[cand][1]
        host = min(selected, key=lambda s: (-len(candidates[s][1] & peptides), s))
        subsumed[host].extend(candidates[cand][0])

    # 4. Razor assignment of shared peptides
    pep_to_selected: Dict[str, Set[str]] = {}
    for cand in selected:
        for pep in candidates[cand][1]:
            pep_to_selected.setdefault(pep, set()).add(cand)

    unique = {
        cand: {p for p in candidates[cand][1] if len(pep_to_selected[p]) == 1}
        for cand in selected
    }
    razor: Dict[str, Set[str]] = {cand: set() for cand in selected}
    for pep, owners in pep_to_selected.items():
        if len(owners) > 1:
            winner = min(owners, key=lambda c: (-len(unique[c]), -len(candidates[c][1]), c))
            razor[winner].add(pep)

    groups = []
    for i, cand in enumerate(sorted(selected), start=1):
        members, peptides = candidates[cand]
        owned = unique[cand] | razor[cand]
        groups.append(ProteinGroup(
            group_id=f'PG{i:04d}',
            leading_protein=cand,
            leading_protein_name=prot_to_name.get(cand, cand),
            member_proteins=members,
            subsumed_proteins=sorted(subsumed[cand]),
            peptides=owned,
            unique_peptides=unique[cand],
            razor_peptides=razor[cand],
            shared_peptides=peptides - owned,
        ))

    logger.info(
        f"Parsimony: {len(prot_to_pep)} proteins -> {len(groups)} groups "
        f"({sum(len(g.subsumed_proteins) for g in groups)} subsumed)"
    )
    return groups


def resolve_protein_assignment(
    tables: Iterable[pd.DataFrame],
    peptide_col: str = 'sequence',
    protein_col: str = 'master_protein_accessions',
    separator: str = ';',
) -> Tuple[Dict[str, str], List[ProteinGroup]]:
    """
    Pool every replicate's peptide -> protein evidence and resolve it once.

    Args:
        tables: Per-replicate peptide tables
        peptide_col: Peptide sequence column (modifications are ignored)
        protein_col: Protein accession column
        separator: Separator between accessions in one cell

    Returns:
        Tuple of (sequence -> leading protein accession, protein groups)
    """
    pooled = pd.concat(
        [t[[peptide_col, protein_col]] for t in tables],
        ignore_index=True,
    )
    pep_to_prot, prot_to_pep, prot_to_name = build_peptide_protein_map(
        pooled,
        peptide_col=peptide_col,
        protein_col=protein_col,
        name_col=None,
        separator=separator,
    )
    groups = compute_protein_groups(prot_to_pep, pep_to_prot, prot_to_name)

    assignment: Dict[str, str] = {}
    for group in groups:
        for peptide in group.peptides:
            assignment[peptide] = group.leading_protein

    n_changed = sum(
        1 for pep, prots in pep_to_prot.items()
        if len(prots) > 1 and pep in assignment
    )
    logger.info(
        f"Resolved {len(assignment)} peptide sequences to {len(groups)} proteins "
        f"({n_changed} with conflicting assignments)"
    )
    return assignment, groups


def export_protein_groups(groups: List[ProteinGroup], output_path) -> Path:
    """Write protein groups to a TSV file."""
    output_path = Path(output_path)
    df = pd.DataFrame([g.to_dict() for g in groups])
    df.to_csv(output_path, sep='\t', index=False)
    logger.info(f"Exported {len(groups)} protein groups to {output_path}")
    return output_path
