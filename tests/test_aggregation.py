"""
Unit tests for segment pooling and header relabeling.

Tests cover:
- Record counts and ordering with missing per-sample segments
- Full-label and sample-only header formats
- Removal of empty pools, including stale files from an earlier run
- Verbatim sequence lines and FASTA validity (Bio.SeqIO)
- Pool summary and sample/segment matrix tables
"""

import unittest
import re
import tempfile
import shutil
from pathlib import Path

import pandas as pd
from Bio import SeqIO

from iavbatch import aggregation
from iavbatch.aggregation import FULL_LABEL, SAMPLE_ONLY
from iavbatch.config import SEGMENTS
from iavbatch.samples import build_catalog

FULL_HEADER = re.compile(r"^FOX01_barcode\d{2}\|[^|]+\|.+$")


def write_irma_outputs(assembly_dir, items, missing=()):
    """Create amended_consensus/{id}_{n}.fa for every (item, segment) not in ``missing``."""
    missing = set(missing)
    for item in items:
        consensus_dir = Path(assembly_dir) / item.identifier / "amended_consensus"
        consensus_dir.mkdir(parents=True, exist_ok=True)
        for n, segment in enumerate(SEGMENTS, start=1):
            if (item.identifier, segment) in missing:
                continue
            (consensus_dir / f"{item.identifier}_{n}.fa").write_text(
                f">{item.identifier}_{n}\nACGTACGTAC\nGTACGT\n"
            )


class AggregationTestCase(unittest.TestCase):

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.assembly_dir = self.temp_dir / "irma_results"
        self.pool_dir = self.temp_dir / "irma_consensus"
        labels = {f"barcode{n:02d}": f"FOX-{100 + n}" for n in range(1, 25)}
        labels["barcode05"] = ""
        self.items = build_catalog(24, labels)

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def _aggregate(self, policy, items=None):
        return aggregation.aggregate(
            "FOX01", items or self.items, SEGMENTS, policy, self.assembly_dir, self.pool_dir
        )


class TestMissingSegments(AggregationTestCase):

    def test_three_missing_na(self):
        missing = {("barcode02", "NA"), ("barcode11", "NA"), ("barcode20", "NA")}
        write_irma_outputs(self.assembly_dir, self.items, missing)

        full = self._aggregate(FULL_LABEL)
        sample_only = self._aggregate(SAMPLE_ONLY)

        self.assertEqual(full.counts["NA"], 21)
        self.assertEqual(sample_only.counts["NA"], 21)
        self.assertEqual(full.counts["HA"], 24)
        self.assertEqual(sorted(full.missing), sorted(missing))

        full_ids = [r.id for r in SeqIO.parse(str(self.pool_dir / "NA_consensus_FOX01.fasta"), "fasta")]
        expected = [
            f"FOX01_{i.identifier}|{i.sample_label}|{i.identifier}_6"
            for i in self.items if (i.identifier, "NA") not in missing
        ]
        self.assertEqual(full_ids, expected)

        sample_ids = [r.id for r in SeqIO.parse(str(self.pool_dir / "NA_FOX01.fasta"), "fasta")]
        self.assertEqual(
            sample_ids,
            [i.sample_label for i in self.items if (i.identifier, "NA") not in missing],
        )

    def test_all_mp_missing(self):
        missing = {(i.identifier, "MP") for i in self.items}
        write_irma_outputs(self.assembly_dir, self.items, missing)

        full = self._aggregate(FULL_LABEL)
        sample_only = self._aggregate(SAMPLE_ONLY)

        self.assertFalse((self.pool_dir / "MP_consensus_FOX01.fasta").exists())
        self.assertFalse((self.pool_dir / "MP_FOX01.fasta").exists())
        self.assertEqual(full.counts["MP"], 0)
        self.assertIn("MP", full.removed)
        self.assertIn("MP", sample_only.removed)
        self.assertNotIn("MP", full.written)
        self.assertTrue((self.pool_dir / "NS_consensus_FOX01.fasta").exists())

    def test_stale_empty_pool_removed(self):
        self.pool_dir.mkdir(parents=True)
        stale = self.pool_dir / "PB2_consensus_FOX01.fasta"
        stale.write_text(">old\nAAAA\n")

        missing = {(i.identifier, "PB2") for i in self.items}
        write_irma_outputs(self.assembly_dir, self.items, missing)
        self._aggregate(FULL_LABEL)

        self.assertFalse(stale.exists())

    def test_missing_source_warned_once(self):
        write_irma_outputs(self.assembly_dir, self.items[:1], {("barcode01", "HA")})
        items = self.items[:1]

        with self.assertLogs('iavbatch.aggregation', level='WARNING') as cm:
            self._aggregate(FULL_LABEL, items)
        self.assertTrue(any("barcode01 segment HA" in line for line in cm.output))

        with self.assertLogs('iavbatch.aggregation', level='DEBUG') as cm:
            self._aggregate(SAMPLE_ONLY, items)
        self.assertFalse(any(line.startswith("WARNING") for line in cm.output))


class TestEmptySources(AggregationTestCase):
    """Source files that exist but hold no records."""

    def _source(self, identifier, segment):
        return aggregation.segment_source_path(self.assembly_dir, identifier, segment)

    def test_zero_byte_source(self):
        write_irma_outputs(self.assembly_dir, self.items)
        self._source("barcode07", "NA").write_text("")

        full = self._aggregate(FULL_LABEL)
        sample_only = self._aggregate(SAMPLE_ONLY)

        self.assertEqual(full.counts["NA"], 23)
        self.assertEqual(sample_only.counts["NA"], 23)
        self.assertEqual(full.record_counts[("barcode07", "NA")], 0)
        self.assertNotIn(("barcode07", "NA"), full.missing)

        full_ids = [r.id for r in SeqIO.parse(str(self.pool_dir / "NA_consensus_FOX01.fasta"), "fasta")]
        self.assertEqual(len(full_ids), 23)
        self.assertFalse(any("barcode07" in record_id for record_id in full_ids))

    def test_source_without_header(self):
        write_irma_outputs(self.assembly_dir, self.items)
        self._source("barcode03", "PA").write_text("ACGTACGTAC\nGTACGT\n")

        full = self._aggregate(FULL_LABEL)

        self.assertEqual(full.counts["PA"], 23)
        self.assertEqual(full.record_counts[("barcode03", "PA")], 0)
        records = list(SeqIO.parse(str(self.pool_dir / "PA_consensus_FOX01.fasta"), "fasta"))
        self.assertEqual(len(records), 23)
        self.assertTrue(all(str(r.seq) == "ACGTACGTACGTACGT" for r in records))

    def test_all_sources_empty(self):
        write_irma_outputs(self.assembly_dir, self.items)
        for item in self.items:
            self._source(item.identifier, "HA").write_text("")

        full = self._aggregate(FULL_LABEL)
        sample_only = self._aggregate(SAMPLE_ONLY)

        self.assertFalse((self.pool_dir / "HA_consensus_FOX01.fasta").exists())
        self.assertFalse((self.pool_dir / "HA_FOX01.fasta").exists())
        self.assertEqual(full.counts["HA"], 0)
        self.assertIn("HA", full.removed)
        self.assertIn("HA", sample_only.removed)
        self.assertEqual(full.missing, [])


class TestHeaders(AggregationTestCase):

    def test_header_formats(self):
        write_irma_outputs(self.assembly_dir, self.items)
        self._aggregate(FULL_LABEL)
        self._aggregate(SAMPLE_ONLY)

        labels = {i.sample_label for i in self.items}
        for segment in SEGMENTS:
            full_path = self.pool_dir / f"{segment}_consensus_FOX01.fasta"
            for line in full_path.read_text().splitlines():
                if line.startswith(">"):
                    self.assertRegex(line[1:], FULL_HEADER)

            sample_path = self.pool_dir / f"{segment}_FOX01.fasta"
            headers = [l[1:] for l in sample_path.read_text().splitlines() if l.startswith(">")]
            self.assertEqual(len(headers), 24)
            self.assertTrue(all(h in labels for h in headers))

    def test_blank_label_falls_back_to_identifier(self):
        write_irma_outputs(self.assembly_dir, self.items)
        self._aggregate(SAMPLE_ONLY)
        headers = [r.id for r in SeqIO.parse(str(self.pool_dir / "HA_FOX01.fasta"), "fasta")]
        self.assertEqual(headers[4], "barcode05")

    def test_original_header_kept_whole(self):
        item = self.items[0]
        consensus_dir = self.assembly_dir / item.identifier / "amended_consensus"
        consensus_dir.mkdir(parents=True)
        (consensus_dir / "barcode01_4.fa").write_text(">A_HA_H9 amended length=1700\nACGT\n")

        self._aggregate(FULL_LABEL, [item])

        text = (self.pool_dir / "HA_consensus_FOX01.fasta").read_text()
        self.assertEqual(text, ">FOX01_barcode01|FOX-101|A_HA_H9 amended length=1700\nACGT\n")

    def test_relabel_header_unknown_policy(self):
        with self.assertRaises(ValueError):
            aggregation.relabel_header(
                aggregation.SegmentRecord("x"), self.items[0], "FOX01", "short"
            )


class TestPoolContents(AggregationTestCase):

    def test_body_lines_verbatim(self):
        write_irma_outputs(self.assembly_dir, self.items[:2])
        self._aggregate(SAMPLE_ONLY, self.items[:2])

        text = (self.pool_dir / "PB1_FOX01.fasta").read_text()
        self.assertEqual(text, ">FOX-101\nACGTACGTAC\nGTACGT\n>FOX-102\nACGTACGTAC\nGTACGT\n")

    def test_multi_record_source_kept_in_order(self):
        item = self.items[0]
        consensus_dir = self.assembly_dir / item.identifier / "amended_consensus"
        consensus_dir.mkdir(parents=True)
        (consensus_dir / "barcode01_6.fa").write_text(">A_NA_N2\nAAAA\n>A_NA_N2_minor\nCCCC\n")

        result = self._aggregate(FULL_LABEL, [item])

        self.assertEqual(result.counts["NA"], 2)
        records = list(SeqIO.parse(str(result.written["NA"]), "fasta"))
        self.assertEqual(str(records[0].seq), "AAAA")
        self.assertEqual(str(records[1].seq), "CCCC")

    def test_rerun_rebuilds_pool(self):
        write_irma_outputs(self.assembly_dir, self.items)
        self._aggregate(FULL_LABEL)
        result = self._aggregate(FULL_LABEL)

        self.assertEqual(result.counts["HA"], 24)
        records = list(SeqIO.parse(str(result.written["HA"]), "fasta"))
        self.assertEqual(len(records), 24)

    def test_items_sorted_by_identifier(self):
        write_irma_outputs(self.assembly_dir, self.items[:3])
        self._aggregate(SAMPLE_ONLY, list(reversed(self.items[:3])))

        ids = [r.id for r in SeqIO.parse(str(self.pool_dir / "NS_FOX01.fasta"), "fasta")]
        self.assertEqual(ids, ["FOX-101", "FOX-102", "FOX-103"])

    def test_unknown_policy(self):
        with self.assertRaises(ValueError):
            self._aggregate("short")

    def test_pooled_output_paths(self):
        self.assertEqual(
            aggregation.pooled_output_path("irma_consensus", "HA", "FOX01", FULL_LABEL),
            Path("irma_consensus/HA_consensus_FOX01.fasta"),
        )
        self.assertEqual(
            aggregation.pooled_output_path("irma_consensus", "HA", "FOX01", SAMPLE_ONLY),
            Path("irma_consensus/HA_FOX01.fasta"),
        )
        self.assertEqual(
            aggregation.segment_source_path("irma_results", "barcode03", "NS"),
            Path("irma_results/barcode03/amended_consensus/barcode03_8.fa"),
        )


class TestSummaryTables(AggregationTestCase):

    def test_pool_summary(self):
        missing = {(i.identifier, "MP") for i in self.items} | {("barcode02", "NA")}
        write_irma_outputs(self.assembly_dir, self.items, missing)
        full = self._aggregate(FULL_LABEL)
        sample_only = self._aggregate(SAMPLE_ONLY)

        path = self.temp_dir / "FOX01_pool_summary.tsv"
        aggregation.write_pool_summary([full, sample_only], path)

        df = pd.read_csv(path, sep='\t', keep_default_na=False)
        self.assertEqual(len(df), 16)
        na_full = df[(df['segment'] == 'NA') & (df['policy'] == FULL_LABEL)].iloc[0]
        self.assertEqual(na_full['n_records'], 23)
        self.assertEqual(na_full['output_file'], "NA_consensus_FOX01.fasta")
        mp_sample = df[(df['segment'] == 'MP') & (df['policy'] == SAMPLE_ONLY)].iloc[0]
        self.assertEqual(mp_sample['n_records'], 0)
        self.assertEqual(mp_sample['output_file'], "")

    def test_sample_segment_matrix(self):
        write_irma_outputs(self.assembly_dir, self.items[:2], {("barcode02", "HA"), ("barcode02", "NA")})
        result = self._aggregate(FULL_LABEL, self.items[:2])

        path = self.temp_dir / "matrix.tsv"
        df = aggregation.sample_segment_matrix(result, self.items[:2], path)

        self.assertEqual(list(df.index), ["barcode01", "barcode02"])
        self.assertEqual(df.loc["barcode01", "n_segments"], 8)
        self.assertEqual(df.loc["barcode02", "n_segments"], 6)
        self.assertFalse(df.loc["barcode02", "HA"])
        self.assertEqual(df.loc["barcode02", "sample"], "FOX-102")
        self.assertTrue(path.exists())

    def test_matrix_ignores_empty_sources(self):
        items = self.items[:2]
        write_irma_outputs(self.assembly_dir, items)
        aggregation.segment_source_path(self.assembly_dir, "barcode01", "NS").write_text("")
        result = self._aggregate(FULL_LABEL, items)

        df = aggregation.sample_segment_matrix(result, items)

        self.assertFalse(df.loc["barcode01", "NS"])
        self.assertEqual(df.loc["barcode01", "n_segments"], 7)
        self.assertEqual(df.loc["barcode02", "n_segments"], 8)


if __name__ == '__main__':
    unittest.main()
