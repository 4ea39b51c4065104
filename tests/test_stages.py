from __future__ import annotations

import os
from pathlib import Path

import pytest
import yaml

from w2vu_pipeline.errors import ConfigurationError, MissingArtifactError
from w2vu_pipeline.pipeline import downloads, stages
from w2vu_pipeline.pipeline.commands import Command
from w2vu_pipeline.pipeline.config import DatasetConfig, PipelineConfig
from w2vu_pipeline.pipeline.steps import StageContext

from conftest import FakeRunner

GAN_YAML = {
    "common": {"fp16": False, "user_dir": None},
    "task": {"_name": "unpaired_audio_text", "data": None, "text_data": None, "kenlm_path": None},
    "model": {"code_penalty": 0.0, "gradient_penalty": 0.0, "smoothness_weight": 0.0},
    "optimizer": {
        "groups": {
            "generator": {"lr": 0.0004, "optimizer": {"_name": "adam", "amsgrad": False}},
            "discriminator": {"lr": 0.0005, "optimizer": {"_name": "adam", "amsgrad": False}},
        }
    },
}

SELF_TRAIN_SH = """\
#!/bin/bash
w2v_dir=
lab_dir=
out_dir=
arpa_lm=
arpa_lm_bin=
label=phnc
for x in $train_name $valid_name; do
  x_gt=${x}_gt
  cp $data_dir/$x/{feats.scp,cmvn.scp,utt2spk,spk2utt} $data_dir/$x_gt/
  python local/copy_aligned_text.py < $w2v_dir/$x.$label > $data_dir/$x_gt/text
done
"""

RESULTS = """\
INFO:root:/st/out/exp/tri2b/decode_valid/scoring/0.5.tra.txt: score 0.5 wer 14.0% lm_ppl 3.1
INFO:root:/st/out/exp/tri3b/decode_valid/scoring/7.0.5.tra.txt: score 0.5 wer 9.0% lm_ppl 3.1
"""


def _write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path


def _with_dataset(ctx: StageContext, **fields: str) -> StageContext:
    config = ctx.config.model_copy(update={"dataset": DatasetConfig(**fields)})
    return StageContext(config=config, paths=ctx.paths, commands=ctx.commands)


class ManifestWriter(FakeRunner):
    """Writes a valid.tsv into the --dest directory like wav2vec_manifest.py."""

    def run(self, command: Command) -> int:
        code = super().run(command)
        dest = Path(command.args[command.args.index("--dest") + 1])
        (dest / "valid.tsv").write_text("/audio\nutt1.wav\t16000\n")
        return code


def test_verify_toolchain_reports_missing_tool(ctx: StageContext) -> None:
    with pytest.raises(MissingArtifactError) as exc_info:
        stages.verify_toolchain(ctx)

    assert exc_info.value.path == ctx.paths.fairseq_root


def test_validation_manifest_keeps_train_manifest(ctx: StageContext, tmp_path: Path) -> None:
    audio = tmp_path / "val_audio"
    audio.mkdir()
    ctx = _with_dataset(ctx, val_audio=str(audio))
    ctx = StageContext(config=ctx.config, paths=ctx.paths, commands=ManifestWriter())
    train_tsv = _write(ctx.paths.manifests_dir / "train.tsv", "/audio\n")

    stages.create_manifests_val(ctx)

    assert (ctx.paths.manifests_dir / "valid.tsv").read_text().startswith("/audio")
    assert train_tsv.read_text() == "/audio\n"
    assert not list(ctx.paths.manifests_dir.glob("val_manifest.*"))
    (call,) = ctx.commands.calls
    assert call.args[-2:] == ("--valid-percent", "1.0")


def test_validation_manifest_missing_output(ctx: StageContext, tmp_path: Path) -> None:
    audio = tmp_path / "val_audio"
    audio.mkdir()
    ctx = _with_dataset(ctx, val_audio=str(audio))

    with pytest.raises(MissingArtifactError):
        stages.create_manifests_val(ctx)

    assert not (ctx.paths.manifests_dir / "valid.tsv").exists()
    assert not list(ctx.paths.manifests_dir.glob("val_manifest.*"))


def test_prepare_audio_patches_clustering_options(ctx: StageContext, runner: FakeRunner) -> None:
    p = ctx.paths
    script = _write(
        p.unsupervised_dir / "scripts" / "prepare_audio.sh",
        "python cluster.py --sample-pct 1.0\npython extract.py --batch-size 8\n",
    )
    _write(p.pretrained_model, "weights")

    stages.prepare_audio(ctx)

    assert "--sample-pct 0.5" in script.read_text()
    assert "--batch-size 32" in script.read_text()
    (call,) = runner.calls
    assert call.args == (
        "zsh",
        str(script),
        str(p.manifests_nonsil_dir),
        str(p.clustering_dir),
        str(p.pretrained_model),
        "512",
        "14",
    )


def test_train_gans_patches_config_and_launches_sweep(ctx: StageContext, runner: FakeRunner) -> None:
    p = ctx.paths
    config_file = _write(p.gan_config_dir / "w2vu.yaml", yaml.safe_dump(GAN_YAML, sort_keys=False))

    stages.train_gans(ctx)
    # a retry must not trip over the already deleted fields
    stages.train_gans(ctx)

    doc = yaml.safe_load(config_file.read_text())
    assert doc["task"]["data"] == str(p.precompute_dir)
    assert doc["task"]["text_data"] == f"{p.phones_dir}/"
    assert doc["model"]["code_penalty"] == "2"
    assert doc["model"]["smoothness_weight"] == "0.5"
    for group in ("generator", "discriminator"):
        optimizer = doc["optimizer"]["groups"][group]["optimizer"]
        assert optimizer == {"_name": "adam", "lr": "[0.004]"}

    call = runner.calls[-1]
    assert call.args[0] == "fairseq-hydra-train"
    assert "model.code_penalty=2,4" in call.args
    assert "common.seed=range(0,5)" in call.args
    assert call.env == {"PREFIX": "w2v_unsup_gan_xp"}
    assert call.stdout_path == p.training_log
    assert call.merge_stderr and call.tee


def test_viterbi_transcription_needs_gan_checkpoint(ctx: StageContext, runner: FakeRunner) -> None:
    with pytest.raises(MissingArtifactError):
        stages.transcription_gans_viterbi(ctx)
    assert runner.calls == []


def test_viterbi_transcription_runs_both_subsets(ctx: StageContext, runner: FakeRunner) -> None:
    p = ctx.paths
    _write(p.gan_checkpoint, "ckpt")
    viterbi = _write(p.generate_config_dir / "viterbi.yaml", "fairseq:\n  task:\n    _name: unpaired_audio_text\n")

    stages.transcription_gans_viterbi(ctx)

    doc = yaml.safe_load(viterbi.read_text())
    assert doc["fairseq"]["task"]["_name"] == "unpaired_audio_text"
    assert doc["fairseq"]["common_eval"]["path"] == str(p.gan_checkpoint)
    assert doc["results_path"] == str(p.transcription_phones_dir)
    subsets = [a for call in runner.calls for a in call.args if a.startswith("fairseq.dataset.gen_subset=")]
    assert subsets == ["fairseq.dataset.gen_subset=valid", "fairseq.dataset.gen_subset=train"]


def test_self_training_patches_recipe(ctx: StageContext, runner: FakeRunner) -> None:
    p = ctx.paths
    _write(p.unsupervised_dir / "kaldi_self_train" / "st" / "train.sh", SELF_TRAIN_SH)

    stages.self_training(ctx)

    train_sh = p.self_train_dir / "train.sh"
    lines = train_sh.read_text().splitlines()
    assert f"lab_dir={p.transcription_phones_dir}" in lines
    assert f"arpa_lm_bin={p.phone_lm_bin}/" in lines
    assert "# " + stages.COPY_GT_LINE in lines
    assert stages.VALID_GT_MARKER in lines
    assert os.access(train_sh, os.X_OK)

    (call,) = runner.calls
    assert call.args == (str(train_sh),)
    assert call.cwd == p.self_train_dir
    assert call.stdout_path == p.self_train_dir / "results.txt"


def test_phone_eval_uses_best_trial(ctx: StageContext, runner: FakeRunner) -> None:
    st = ctx.paths.self_train_dir
    _write(st / "results.txt", RESULTS)
    script = _write(st / "decode_phone.sh", "out_dir=\ndec_lmparam=\ndec_exp=\ndec_script=\ndec_splits=train\n")

    stages.transcription_hmm_phone_eval(ctx)

    lines = script.read_text().splitlines()
    assert "dec_exp=tri3b" in lines
    assert "dec_lmparam=7.0.5" in lines
    assert "dec_splits=valid" in lines
    assert runner.calls[0].args == (str(script),)


def test_phone_eval_without_scored_trials_keeps_defaults(ctx: StageContext) -> None:
    st = ctx.paths.self_train_dir
    _write(st / "results.txt", "nothing scored\n")
    script = _write(st / "decode_phone.sh", "dec_lmparam=1.0\ndec_exp=tri1\n")

    stages.transcription_hmm_phone_eval(ctx)

    assert script.read_text() == "dec_lmparam=1.0\ndec_exp=tri1\n"


def test_word_step2_scores_speaker_independent_decode(ctx: StageContext) -> None:
    st = ctx.paths.self_train_dir
    _write(st / "results_word.txt", RESULTS)
    script = _write(
        st / "decode_word_step2.sh",
        "dec_exp=\ndec_lmparam=\ncat $out_dir/exp/$dec_exp/decode${dec_suffix}_${split}/scoring/$dec_lmparam.tra\n",
    )

    stages.transcription_hmm_word2_eval(ctx)
    stages.transcription_hmm_word2_eval(ctx)

    text = script.read_text()
    assert "dec_exp=tri3b\n" in text
    assert text.count("_${split}.si/scoring") == 1


def test_download_skips_existing_file(ctx: StageContext, monkeypatch: pytest.MonkeyPatch) -> None:
    _write(ctx.paths.pretrained_model, "weights")

    def fail(*args: object, **kwargs: object) -> None:
        raise AssertionError("no request expected")

    monkeypatch.setattr(downloads.requests, "get", fail)

    stages.download_pretrained_model(ctx)

    assert ctx.paths.pretrained_model.read_text() == "weights"


class _Response:
    def __init__(self, status_code: int, chunks: list[bytes]) -> None:
        self.status_code = status_code
        self._chunks = chunks

    def __enter__(self) -> "_Response":
        return self

    def __exit__(self, *exc: object) -> None:
        return None

    def iter_content(self, chunk_size: int) -> list[bytes]:
        return self._chunks


def test_download_writes_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(downloads.requests, "get", lambda url, **kw: _Response(200, [b"ab", b"", b"cd"]))
    dest = tmp_path / "models" / "lid.176.bin"

    assert downloads.download_file("https://example.invalid/lid.176.bin", dest)
    assert dest.read_bytes() == b"abcd"
    assert not dest.with_name("lid.176.bin.part").exists()


def test_download_http_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(downloads.requests, "get", lambda url, **kw: _Response(404, []))
    dest = tmp_path / "lid.176.bin"

    with pytest.raises(downloads.DownloadError):
        downloads.download_file("https://example.invalid/lid.176.bin", dest)
    assert not dest.exists()


def test_stage_step_order() -> None:
    assert [s.name for s in stages.EVALUATE_STEPS][:3] == [
        "transcription_gans_viterbi",
        "transcription_gans_kaldi",
        "self_training",
    ]
    assert stages.TRAIN_STEPS[-1].name == "train_gans"


def test_missing_dataset_setting(config: PipelineConfig, runner: FakeRunner) -> None:
    ctx = StageContext(config=config, paths=config.resolve(), commands=runner)
    with pytest.raises(ConfigurationError):
        stages.create_manifests_train(ctx)
