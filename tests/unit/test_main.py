"""命令行入口与完整流程测试"""

import pytest
import pandas as pd
import yaml

from sc_workflow.main import get_args, build_config, main, STEP_FILES
from sc_workflow.utils import CheckpointManager, DEFAULT_STEPS


@pytest.fixture
def user_config(tmp_path):
    """使用 features 第 2 列（基因名）读取，使 MT- 基因可识别"""
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({
        'read': {'gene_column': 1},
        'qc': {'min_genes': 50},
        'cluster': {'k': 25},
    }), encoding='utf-8')
    return path


class TestArgs:
    """参数解析与配置合并测试"""

    def test_requires_sample_info(self):
        with pytest.raises(SystemExit):
            get_args([])

    def test_defaults_come_from_config(self):
        args = get_args(["--sample_info", "samples.csv"])
        config = build_config(args)

        assert args.min_genes is None
        assert config['qc']['min_genes'] == 200
        assert config['integrate']['method'] == "harmony"
        assert config['droplets']['run'] is False

    def test_precedence(self, user_config):
        args = get_args(["--sample_info", "samples.csv", "--config", str(user_config),
                         "--k", "30", "--max_pct_mito", "15", "--adaptive_qc",
                         "--run_empty_drops", "--n_jobs", "2", "--memory_threshold", "90"])
        config = build_config(args)

        # 命令行 > --config > 默认值
        assert config['cluster']['k'] == 30
        assert config['qc']['min_genes'] == 50
        assert config['qc']['max_pct_mito'] == 15
        assert config['qc']['max_genes'] == 6000
        assert config['read']['gene_column'] == 1
        assert config['qc']['adaptive'] is True
        assert config['droplets']['run'] is True
        assert config['n_jobs'] == 2
        assert config['memory_threshold'] == 90

    def test_invalid_choice(self):
        with pytest.raises(SystemExit):
            get_args(["--sample_info", "samples.csv", "--integration_method", "magic"])

    def test_step_files(self):
        assert STEP_FILES['read'] == "01_read.h5ad"
        assert STEP_FILES['annotate'] == "10_annotate.h5ad"
        assert len(STEP_FILES) == len(DEFAULT_STEPS)


class TestPipeline:
    """完整流程测试"""

    @pytest.fixture
    def pipeline_argv(self, sample_sheet, tmp_path, gene_sets):
        config = tmp_path / "pipeline.yaml"
        config.write_text(yaml.safe_dump({'read': {'gene_column': 1}}), encoding='utf-8')
        marker_sets = tmp_path / "markers.yaml"
        marker_sets.write_text(yaml.safe_dump({f"Type{k}": v for k, v in gene_sets.items()}),
                               encoding='utf-8')
        output_dir = tmp_path / "results"
        argv = [
            "--sample_info", str(sample_sheet),
            "--output_dir", str(output_dir),
            "--config", str(config),
            "--doublet_method", "none",
            "--min_genes", "10",
            "--max_genes", "100000",
            "--max_pct_mito", "100",
            "--integration_method", "mnn",
            "--marker_sets", str(marker_sets),
            "--n_jobs", "1",
        ]
        return argv, output_dir

    def test_end_to_end(self, pipeline_argv):
        argv, output_dir = pipeline_argv
        main(argv)

        ckpt = CheckpointManager(str(output_dir))
        assert ckpt.get_next_step() is None
        assert ckpt.get_checkpoint_data('droplets').get('skipped') is True

        for step_id in ckpt.steps_order:
            if step_id == 'droplets':
                continue
            assert (output_dir / STEP_FILES[step_id]).exists()

        for name in ("03_qc_statistics.csv", "memory_usage.csv", "memory_usage.png",
                     "10_marker_label_by_cluster.csv"):
            assert (output_dir / name).exists()
        assert (output_dir / "integration" / "umap_leiden.png").exists()

        n_clusters = ckpt.get_checkpoint_data('cluster')['n_clusters']
        assert n_clusters >= 2
        assert (output_dir / "08_cluster_diagnostics.csv").exists()
        assert len(list((output_dir / "markers").glob("cluster_*_markers.csv"))) == n_clusters

        qc_stats = pd.read_csv(output_dir / "03_qc_statistics.csv")
        assert len(qc_stats) > 0

        # 断点续传：所有步骤已完成时不再重新运行
        mtime = (output_dir / STEP_FILES['cluster']).stat().st_mtime
        main(argv + ["--resume"])
        assert (output_dir / STEP_FILES['cluster']).stat().st_mtime == mtime

    def test_show_progress(self, pipeline_argv, capsys):
        argv, output_dir = pipeline_argv
        main(argv + ["--show-progress"])

        assert "待执行" in capsys.readouterr().out
        assert not (output_dir / STEP_FILES['read']).exists()

    @pytest.fixture
    def finished_run(self, pipeline_argv):
        argv, output_dir = pipeline_argv
        main(argv)
        return argv, output_dir

    def test_missing_intermediate_recorded(self, pipeline_argv):
        argv, output_dir = pipeline_argv
        # 没有任何中间结果时直接跳到聚类
        with pytest.raises(SystemExit) as excinfo:
            main(argv + ["--skip-to", "cluster"])
        assert excinfo.value.code == 1

        ckpt = CheckpointManager(str(output_dir))
        assert ckpt.get_checkpoint_data('read').get('skipped') is True
        assert ckpt.is_failed('cluster')
        assert ckpt.get_checkpoint_data('cluster')['error_type'] == "FileNotFoundError"
        log = (output_dir / ".error_log.txt").read_text(encoding='utf-8')
        assert "FileNotFoundError" in log

    def test_resume_after_failed_step(self, finished_run):
        argv, output_dir = finished_run
        marker_file = output_dir / STEP_FILES['markers']
        cluster_mtime = (output_dir / STEP_FILES['cluster']).stat().st_mtime

        CheckpointManager(str(output_dir)).mark_step_failed('markers', RuntimeError("boom"))
        marker_file.unlink()
        main(argv + ["--resume", "--memory_threshold", "0"])

        ckpt = CheckpointManager(str(output_dir))
        assert ckpt.is_completed('markers')
        assert ckpt.get_next_step() is None
        assert marker_file.exists()
        assert (output_dir / STEP_FILES['cluster']).stat().st_mtime == cluster_mtime

        memory = pd.read_csv(output_dir / "memory_usage.csv")
        assert memory['over_threshold'].all()

    def test_reset_and_skip_to(self, finished_run):
        argv, output_dir = finished_run
        cluster_mtime = (output_dir / STEP_FILES['cluster']).stat().st_mtime
        for step_id in ('markers', 'annotate'):
            (output_dir / STEP_FILES[step_id]).unlink()

        main(argv + ["--reset", "--skip-to", "markers"])

        ckpt = CheckpointManager(str(output_dir))
        assert ckpt.get_next_step() is None
        assert ckpt.get_checkpoint_data('qc')['file'] == str(output_dir / STEP_FILES['qc'])
        assert ckpt.get_checkpoint_data('droplets').get('skipped') is True
        for step_id in ('markers', 'annotate'):
            assert (output_dir / STEP_FILES[step_id]).exists()
        assert (output_dir / STEP_FILES['cluster']).stat().st_mtime == cluster_mtime
