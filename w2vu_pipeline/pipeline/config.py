from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from w2vu_pipeline.errors import ConfigurationError


def _expand(path: str) -> Path:
    return Path(os.path.expanduser(path)).resolve()


def _under(base: Path, value: str) -> Path:
    """Resolve value against base unless it is already absolute (or ~)."""
    p = Path(os.path.expanduser(value))
    if p.is_absolute():
        return p.resolve()
    return (base / p).resolve()


def _read_toml(path: Path) -> dict[str, Any]:
    """Read TOML into a dict, supporting Python 3.10+.

    Uses tomllib when available, falls back to tomli.
    """
    data = path.read_bytes()
    try:
        import tomllib  # type: ignore[attr-defined]

        return tomllib.loads(data.decode("utf-8"))
    except ModuleNotFoundError:
        import tomli  # type: ignore[import-not-found]

        return tomli.loads(data.decode("utf-8"))


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class ToolchainConfig(_Frozen):
    """Where the external tools live. Relative paths are under root_dir."""

    root_dir: str = Field(default="~/unsupervised_wav", description="Project root holding all tools.")
    fairseq_root: str = Field(default="fairseq")
    kenlm_bin: str = Field(default="kenlm/build/bin", description="KenLM build output (bin).")
    kaldi_root: str = Field(default="pykaldi/tools/kaldi")
    rvad_root: str = Field(default="rVADfast/src/rVADfast")
    venv_path: str = Field(default="venv", description="Empty string disables virtualenv activation.")
    vads_script: str = Field(default="vads.py", description="Helper script producing .vads files.")
    zsh: str = Field(default="zsh", description="Shell used for fairseq's prepare_*.sh scripts.")


class DatasetConfig(_Frozen):
    name: str = Field(default="librispeech")
    train_audio: str = Field(default="", description="Directory of unlabelled training audio.")
    val_audio: str = Field(default="", description="Directory of unlabelled validation audio.")
    unlabelled_text: str = Field(default="", description="Unlabelled text corpus file.")
    audio_ext: str = Field(default="wav")


class ModelsConfig(_Frozen):
    pretrained_model: str = Field(default="pre-trained/wav2vec_vox_new.pt")
    lid_model: str = Field(default="lid_model/lid.176.bin")
    pretrained_model_url: str = Field(
        default="https://dl.fbaipublicfiles.com/fairseq/wav2vec/wav2vec_vox_new.pt"
    )
    lid_model_url: str = Field(
        default="https://dl.fbaipublicfiles.com/fasttext/supervised-models/lid.176.bin"
    )


class AudioPrepConfig(_Frozen):
    sample_pct: float = Field(default=0.5, description="Share of audio used for k-means clustering.")
    batch_size: int = Field(default=32)
    pca_dim: int = Field(default=512)
    feature_layer: int = Field(default=14)


class TextPrepConfig(_Frozen):
    language: str = Field(default="ak")
    min_phones: int = Field(default=3)
    phonemizer: str = Field(default="G2P")
    sil_prob: float = Field(default=0.25)


class GanConfig(_Frozen):
    """Hydra sweep values; comma-separated lists trigger a multirun."""

    code_penalty: str = Field(default="2,4")
    gradient_penalty: str = Field(default="1.5,2.0")
    smoothness_weight: str = Field(default="0.5,0.75,1.0")
    seeds: str = Field(default="range(0,5)")
    optimizer_lr: str = Field(default="[0.004]")
    experiment_prefix: str = Field(default="w2v_unsup_gan_xp")


class EvaluationConfig(_Frozen):
    gan_checkpoint: str = Field(
        default="",
        description="GAN checkpoint used for transcription; defaults to <results>/checkpoint_best.pt.",
    )
    hmm_label: str = Field(default="phnc")
    decode_splits: str = Field(default="valid")


class OutputConfig(_Frozen):
    data_root: str = Field(default="data", description="Relative to toolchain.root_dir unless absolute.")
    manifests_dir: str = Field(default="manifests")
    nonsil_audio_dir: str = Field(default="processed_audio")
    manifests_nonsil_dir: str = Field(default="manifests_nonsil")
    clustering_dir: str = Field(default="clustering")
    results_dir: str = Field(default="results")
    checkpoints_dir: str = Field(default="checkpoints")
    logs_dir: str = Field(default="logs")
    text_dir: str = Field(default="text")
    transcription_phones_dir: str = Field(default="transcription_phones")
    transcription_words_dir: str = Field(default="transcription_words")
    selftraining_dir: str = Field(default="selftraining")


class PipelineConfig(_Frozen):
    toolchain: ToolchainConfig = Field(default_factory=ToolchainConfig)
    dataset: DatasetConfig = Field(default_factory=DatasetConfig)
    models: ModelsConfig = Field(default_factory=ModelsConfig)
    audio: AudioPrepConfig = Field(default_factory=AudioPrepConfig)
    text: TextPrepConfig = Field(default_factory=TextPrepConfig)
    gan: GanConfig = Field(default_factory=GanConfig)
    evaluation: EvaluationConfig = Field(default_factory=EvaluationConfig)
    outputs: OutputConfig = Field(default_factory=OutputConfig)

    @classmethod
    def load(cls, path: Path) -> "PipelineConfig":
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}")
        try:
            raw = _read_toml(path)
        except ValueError as exc:
            raise ConfigurationError(f"Could not parse {path}: {exc}") from exc
        try:
            return cls.model_validate(raw)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid config {path}:\n{exc}") from exc

    def resolve(self) -> "ResolvedPaths":
        tc = self.toolchain
        root = _expand(tc.root_dir)
        out = self.outputs
        data = _under(root, out.data_root)
        ds = self.dataset.name
        results = data / out.results_dir / ds
        return ResolvedPaths(
            root_dir=root,
            fairseq_root=_under(root, tc.fairseq_root),
            kenlm_bin=_under(root, tc.kenlm_bin),
            kaldi_root=_under(root, tc.kaldi_root),
            rvad_root=_under(root, tc.rvad_root),
            venv_path=_under(root, tc.venv_path) if tc.venv_path else None,
            vads_script=_under(root, tc.vads_script),
            pretrained_model=_under(root, self.models.pretrained_model),
            lid_model=_under(root, self.models.lid_model),
            data_root=data,
            manifests_dir=data / out.manifests_dir,
            nonsil_audio_dir=data / out.nonsil_audio_dir,
            manifests_nonsil_dir=data / out.manifests_nonsil_dir,
            clustering_dir=data / out.clustering_dir / ds,
            results_dir=results,
            checkpoints_dir=data / out.checkpoints_dir / ds,
            logs_dir=data / out.logs_dir / ds,
            text_dir=data / out.text_dir,
            transcription_phones_dir=data / out.transcription_phones_dir,
            transcription_words_dir=data / out.transcription_words_dir,
            selftraining_dir=data / out.selftraining_dir,
            gan_checkpoint=(
                _under(root, self.evaluation.gan_checkpoint)
                if self.evaluation.gan_checkpoint
                else results / "checkpoint_best.pt"
            ),
            pca_dim=self.audio.pca_dim,
        )


class ResolvedPaths(_Frozen):
    root_dir: Path
    fairseq_root: Path
    kenlm_bin: Path
    kaldi_root: Path
    rvad_root: Path
    venv_path: Path | None
    vads_script: Path
    pretrained_model: Path
    lid_model: Path
    data_root: Path
    manifests_dir: Path
    nonsil_audio_dir: Path
    manifests_nonsil_dir: Path
    clustering_dir: Path
    results_dir: Path
    checkpoints_dir: Path
    logs_dir: Path
    text_dir: Path
    transcription_phones_dir: Path
    transcription_words_dir: Path
    selftraining_dir: Path
    gan_checkpoint: Path
    pca_dim: int = 512

    def ensure_dirs(self) -> None:
        for p in (
            self.manifests_dir,
            self.manifests_nonsil_dir,
            self.clustering_dir,
            self.results_dir,
            self.checkpoints_dir,
            self.logs_dir,
            self.text_dir,
            self.transcription_phones_dir,
            self.transcription_words_dir,
            self.selftraining_dir,
        ):
            p.mkdir(parents=True, exist_ok=True)

    @property
    def checkpoint_file(self) -> Path:
        return self.checkpoints_dir / "progress.checkpoint"

    @property
    def unsupervised_dir(self) -> Path:
        return self.fairseq_root / "examples" / "wav2vec" / "unsupervised"

    @property
    def manifest_script(self) -> Path:
        return self.fairseq_root / "examples" / "wav2vec" / "wav2vec_manifest.py"

    @property
    def gan_config_dir(self) -> Path:
        return self.unsupervised_dir / "config" / "gan"

    @property
    def generate_config_dir(self) -> Path:
        return self.unsupervised_dir / "config" / "generate"

    @property
    def precompute_dir(self) -> Path:
        return self.clustering_dir / f"precompute_pca{self.pca_dim}_cls128_mean_pooled"

    @property
    def phones_dir(self) -> Path:
        return self.text_dir / "phones"

    @property
    def phone_lm_bin(self) -> Path:
        return self.phones_dir / "lm.phones.filtered.04.bin"

    @property
    def phone_lm_arpa(self) -> Path:
        return self.phones_dir / "lm.phones.filtered.04.arpa"

    @property
    def words_fst_dir(self) -> Path:
        return self.text_dir / "fst" / "phn_to_words_sil"

    @property
    def speechproc_script(self) -> Path:
        return self.rvad_root / "speechproc" / "speechproc.py"

    @property
    def add_self_loop_source(self) -> Path:
        return self.fairseq_root / "examples" / "speech_recognition" / "kaldi" / "add-self-loop-simple.cc"

    @property
    def self_train_dir(self) -> Path:
        """Kaldi self-training recipe, copied under $KALDI_ROOT/egs."""
        return self.kaldi_root / "egs" / "kaldi_self_train" / "st"

    @property
    def training_log(self) -> Path:
        return self.results_dir / "training1.log"
