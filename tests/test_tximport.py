"""Tests for transcript -> gene length-scaled count aggregation."""

import os

import pandas as pd
import pytest

from conftest import write_abundance, write_tx2gene
from music_deconv.errors import InputError, MappingError
from music_deconv.s1.io import find_abundance_files, read_tx2gene
from music_deconv.s1.tximport import (
    build_count_matrix,
    convert_to_counts,
    read_counts,
    strip_gene_version,
    write_counts,
)


@pytest.fixture
def two_gene_dir(tmp_path):
    """G1 has two transcripts of different length; G1 is silent in sample B."""
    d = tmp_path / "quant"
    d.mkdir()
    write_abundance(d / "A_abundance.tsv", [
        ("T1", 100.0, 5.0, 10.0),
        ("T2", 300.0, 45.0, 30.0),
        ("T3", 200.0, 60.0, 60.0),
    ])
    write_abundance(d / "B_abundance.tsv", [
        ("T1", 100.0, 0.0, 0.0),
        ("T2", 300.0, 0.0, 0.0),
        ("T3", 200.0, 100.0, 100.0),
    ])
    tx = write_tx2gene(tmp_path / "tx2gene.tsv", [("T1", "G1.2"), ("T2", "G1.2"), ("T3", "G2.1")])
    return str(d), str(tx)


def test_single_transcript_scenario(tmp_path):
    d = tmp_path / "quant"
    d.mkdir()
    write_abundance(d / "A_abundance.tsv", [("T1", 150.0, 10.0, 10.0)])
    write_abundance(d / "B_abundance.tsv", [("T1", 150.0, 20.0, 20.0)])
    tx = write_tx2gene(tmp_path / "tx2gene.tsv", [("T1", "G1")])

    counts = build_count_matrix(find_abundance_files(str(d)), read_tx2gene(str(tx)))

    assert counts.index.tolist() == ["G1"]
    assert counts.columns.tolist() == ["A", "B"]
    assert counts.loc["G1", "B"] / counts.loc["G1", "A"] == pytest.approx(2.0)


def test_length_scaled_sum(two_gene_dir):
    d, tx = two_gene_dir
    counts = build_count_matrix(find_abundance_files(d), read_tx2gene(tx))

    # gene lengths: A -> G1 (10*100 + 30*300)/40 = 250, G2 200
    # B -> G1 has no abundance, falls back to mean(100, 300) = 200
    len_g1 = (250.0 + 200.0) / 2
    len_g2 = 200.0
    new_a = pd.Series({"G1": 40 * len_g1, "G2": 60 * len_g2})
    expected_a = new_a * (110.0 / new_a.sum())

    assert counts.loc["G1", "A"] == pytest.approx(expected_a["G1"])
    assert counts.loc["G2", "A"] == pytest.approx(expected_a["G2"])
    assert counts.loc["G2", "B"] == pytest.approx(100.0)


def test_silent_gene_is_zero_not_missing(two_gene_dir):
    d, tx = two_gene_dir
    counts = build_count_matrix(find_abundance_files(d), read_tx2gene(tx))
    assert "G1" in counts.index
    assert counts.loc["G1", "B"] == 0.0


def test_version_suffix_stripped(two_gene_dir):
    d, tx = two_gene_dir
    counts = build_count_matrix(find_abundance_files(d), read_tx2gene(tx))
    assert sorted(counts.index) == ["G1", "G2"]


def test_version_collisions_are_summed(tmp_path):
    d = tmp_path / "quant"
    d.mkdir()
    write_abundance(d / "A_abundance.tsv", [("T1", 100.0, 10.0, 10.0), ("T2", 100.0, 30.0, 30.0)])
    tx = write_tx2gene(tmp_path / "tx2gene.tsv", [("T1", "G1.1"), ("T2", "G1.2")])
    counts = build_count_matrix(find_abundance_files(str(d)), read_tx2gene(str(tx)))
    assert counts.index.tolist() == ["G1"]
    assert counts.loc["G1", "A"] == pytest.approx(40.0)


def test_strip_gene_version():
    idx = strip_gene_version(pd.Index(["ENSG1.12", "ENSG2", "ENSG3.1.2"]))
    assert idx.tolist() == ["ENSG1", "ENSG2", "ENSG3"]


def test_unmapped_transcripts_dropped(tmp_path):
    d = tmp_path / "quant"
    d.mkdir()
    write_abundance(d / "A_abundance.tsv", [("T1", 100.0, 10.0, 10.0), ("T9", 100.0, 90.0, 90.0)])
    tx = write_tx2gene(tmp_path / "tx2gene.tsv", [("T1", "G1")])
    counts = build_count_matrix(find_abundance_files(str(d)), read_tx2gene(str(tx)))
    assert counts.index.tolist() == ["G1"]
    assert counts.loc["G1", "A"] == pytest.approx(10.0)


def test_no_mapped_transcripts(tmp_path):
    d = tmp_path / "quant"
    d.mkdir()
    write_abundance(d / "A_abundance.tsv", [("T1", 100.0, 10.0, 10.0)])
    tx = write_tx2gene(tmp_path / "tx2gene.tsv", [("TX", "G1")])
    with pytest.raises(MappingError):
        build_count_matrix(find_abundance_files(str(d)), read_tx2gene(str(tx)))


def test_counts_checkpoint_round_trip(two_gene_dir, tmp_path):
    d, tx = two_gene_dir
    out = tmp_path / "counts.tsv"
    counts = convert_to_counts(tx, d, out_path=str(out))
    assert out.exists()
    back = read_counts(str(out))
    pd.testing.assert_frame_equal(counts, back, check_names=False, rtol=1e-9)


def test_convert_writes_to_cwd_by_default(two_gene_dir, tmp_path, monkeypatch):
    d, tx = two_gene_dir
    work = tmp_path / "work"
    work.mkdir()
    monkeypatch.chdir(work)
    convert_to_counts(tx, d)
    assert (work / "counts.tsv").exists()
    assert os.path.samefile(os.getcwd(), str(work))


def test_empty_directory_writes_nothing(tmp_path, monkeypatch):
    d = tmp_path / "quant"
    d.mkdir()
    tx = write_tx2gene(tmp_path / "tx2gene.tsv", [("T1", "G1")])
    monkeypatch.chdir(tmp_path)
    with pytest.raises(InputError):
        convert_to_counts(str(tx), str(d))
    assert not (tmp_path / "counts.tsv").exists()


def test_write_counts_has_headers(tmp_path):
    counts = pd.DataFrame({"A": [1.5], "B": [2.0]}, index=pd.Index(["G1"], name="gene_id"))
    p = write_counts(counts, str(tmp_path / "counts.tsv"))
    first = open(p, encoding="utf-8").readline().rstrip("\n").split("\t")
    assert first == ["gene_id", "A", "B"]


def test_unequal_transcript_sets_fill_zero(tmp_path, caplog):
    d = tmp_path / "quant"
    d.mkdir()
    write_abundance(d / "A_abundance.tsv", [("T1", 100.0, 10.0, 10.0), ("T2", 200.0, 30.0, 30.0)])
    write_abundance(d / "B_abundance.tsv", [("T1", 100.0, 20.0, 20.0)])
    tx = write_tx2gene(tmp_path / "tx2gene.tsv", [("T1", "G1"), ("T2", "G2")])

    with caplog.at_level("WARNING"):
        counts = build_count_matrix(find_abundance_files(str(d)), read_tx2gene(str(tx)))

    assert "do not share one transcript set" in caplog.text
    assert counts.loc["G2", "B"] == 0.0
    assert counts.loc["G1", "B"] == pytest.approx(20.0)
    assert not counts.isna().any(axis=None)
