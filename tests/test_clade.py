"""
Unit tests for the nextclade clade stage.

nextclade itself is mocked; reference extraction runs for real against a
small reference collection.
"""

import unittest
from unittest.mock import patch
import tempfile
import shutil
from pathlib import Path

import pandas as pd

from iavbatch import clade, tools
from iavbatch.clade import CladeStageError
from iavbatch.config import CladeConfig, DEFAULT_REFERENCE_NAMES, PipelineConfig
from iavbatch.stages import StageLayout


class CladeTestCase(unittest.TestCase):

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.collection = self.temp_dir / "consensus.fasta"
        self.collection.write_text("".join(
            f">{name}\nACGTACGT\n" for name in DEFAULT_REFERENCE_NAMES.values()
        ))
        self.cfg = PipelineConfig(
            batch_id="FOX01",
            sample_prefix="FOX01",
            n_threads=4,
            work_dir=self.temp_dir,
            clade=CladeConfig(reference_fasta=self.collection),
        )
        self.layout = StageLayout.from_config(self.cfg)
        self.layout.pool_dir.mkdir()

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def _pool(self, segment):
        path = self.layout.pool_dir / f"{segment}_consensus_FOX01.fasta"
        path.write_text(">FOX01_barcode01|FOX-101|barcode01_1\nACGT\n")
        return path


class TestRunCladeAnalysis(CladeTestCase):

    def test_runs_present_segments_in_order(self):
        for segment in ("PB2", "HA", "NS"):
            self._pool(segment)

        calls = []

        def fake_nextclade(input_fasta, reference_fasta, output_prefix, jobs=1):
            calls.append((Path(input_fasta).name, Path(reference_fasta).read_text(), output_prefix, jobs))
            return Path(f"{output_prefix}_nextclade.csv")

        with patch('iavbatch.tools.run_nextclade', side_effect=fake_nextclade):
            outcome = clade.run_clade_analysis(self.cfg, self.layout)

        self.assertEqual(
            [c[0] for c in calls],
            ["HA_consensus_FOX01.fasta", "NS_consensus_FOX01.fasta", "PB2_consensus_FOX01.fasta"],
        )
        self.assertTrue(calls[0][1].startswith(">A_HA_H9"))
        self.assertEqual(
            calls[0][2],
            self.temp_dir / "nextclade_results" / "even_segments" / "HA_consensus_FOX01",
        )
        self.assertEqual(
            calls[2][2],
            self.temp_dir / "nextclade_results" / "odd_segments" / "PB2_consensus_FOX01",
        )
        self.assertEqual(calls[0][3], 4)

        self.assertEqual(sorted(outcome['completed']), ["HA", "NS", "PB2"])
        self.assertEqual(sorted(outcome['skipped']), ["MP", "NA", "NP", "PA", "PB1"])
        self.assertEqual(outcome['failed'], [])
        self.assertTrue((self.layout.clade_dir / "odd_segments").is_dir())

    def test_failure_continues_with_next_segment(self):
        self._pool("HA")
        self._pool("NA")

        def fake_nextclade(input_fasta, reference_fasta, output_prefix, jobs=1):
            if Path(input_fasta).name.startswith("HA"):
                raise tools.ToolExecutionError("nextclade", 1)
            return Path(f"{output_prefix}_nextclade.csv")

        with patch('iavbatch.tools.run_nextclade', side_effect=fake_nextclade):
            with self.assertLogs('iavbatch.clade', level='ERROR'):
                outcome = clade.run_clade_analysis(self.cfg, self.layout)

        self.assertEqual(outcome['failed'], ["HA"])
        self.assertEqual(list(outcome['completed']), ["NA"])

    def test_missing_reference_collection(self):
        self._pool("HA")
        self.collection.unlink()

        with patch('iavbatch.tools.run_nextclade') as mock_nextclade:
            with self.assertRaises(CladeStageError) as cm:
                clade.run_clade_analysis(self.cfg, self.layout)

        self.assertIn("Reference file not found", str(cm.exception))
        mock_nextclade.assert_not_called()

    def test_unknown_reference_name(self):
        self._pool("HA")
        cfg = self.cfg.update(clade__reference_names=dict(DEFAULT_REFERENCE_NAMES, HA="A_HA_H7"))

        with patch('iavbatch.tools.run_nextclade') as mock_nextclade:
            with self.assertRaises(CladeStageError):
                clade.run_clade_analysis(cfg, self.layout)

        mock_nextclade.assert_not_called()


class TestSummarizeClades(CladeTestCase):

    def test_combined_table(self):
        ha_csv = self.temp_dir / "HA_nextclade.csv"
        ha_csv.write_text("seqName;clade;qc.overallStatus\nFOX01_barcode01|FOX-101|x;2.3.4.4b;good\n")
        pb2_csv = self.temp_dir / "PB2_nextclade.csv"
        pb2_csv.write_text("seqName;clade\nFOX01_barcode02|FOX-102|y;\n")

        output = self.temp_dir / "nextclade_results" / "FOX01_clade_summary.tsv"
        df = clade.summarize_clades({"PB2": pb2_csv, "HA": ha_csv}, output)

        self.assertEqual(list(df['segment']), ["HA", "PB2"])
        self.assertEqual(list(df['segment_type']), ["even", "odd"])
        self.assertEqual(df.loc[0, 'clade'], "2.3.4.4b")
        self.assertIn('qc.overallStatus', df.columns)

        written = pd.read_csv(output, sep='\t', keep_default_na=False)
        self.assertEqual(len(written), 2)

    def test_no_outputs(self):
        df = clade.summarize_clades({"HA": self.temp_dir / "missing.csv"})
        self.assertTrue(df.empty)
        self.assertEqual(list(df.columns), ['segment', 'segment_type'])

    def test_segment_types(self):
        self.assertEqual(
            [s for s in clade.CLADE_SEGMENT_ORDER if clade.SEGMENT_TYPES[s] == "even"],
            ["HA", "NA", "PB1", "NS"],
        )
        self.assertEqual(
            clade.segment_output_dir("nextclade_results", "MP"),
            Path("nextclade_results/odd_segments"),
        )


if __name__ == '__main__':
    unittest.main()
