"""Fixed step sequences for the three pipeline stages.

Order encodes the data flow between the external tools (manifests before
silence detection, GAN training before transcription, transcription before
HMM self-training); nothing is inferred at runtime.
"""
from __future__ import annotations

import logging
import os
import shutil
import stat
import tempfile
from pathlib import Path

from w2vu_pipeline.errors import ConfigurationError, PipelineError
from w2vu_pipeline.patching import script_edits, yaml_config
from w2vu_pipeline.patching.script_vars import update_variables
from w2vu_pipeline.pipeline.downloads import download_file
from w2vu_pipeline.pipeline.steps import StageContext, Step
from w2vu_pipeline.selection.log_mining import DecodeParams, select_best_from_file

logger = logging.getLogger(__name__)

PYTHON = "python"

COPY_GT_LINE = "  python local/copy_aligned_text.py < $w2v_dir/$x.$label > $data_dir/$x_gt/text"
COPY_GT_PATTERN = r"cp\s+\$data_dir/\$x/\{feats\.scp,cmvn\.scp,utt2spk,spk2utt\}\s+\$data_dir/\$x_gt/"
VALID_GT_MARKER = 'if [[ "$x" == "$valid_name" ]]; then'
VALID_GT_BLOCK = (
    f"{VALID_GT_MARKER}\n"
    "        python local/copy_aligned_text.py < $w2v_dir/$x.$label > $data_dir/$x_gt/text\n"
    "fi\n"
)
SI_SCORING_PATTERN = r"(decode\$\{dec_suffix\}_[^/]*?)(?<!\.si)/scoring"


# ---------------------------------------------------------------- helpers


def _dataset_input(ctx: StageContext, field: str) -> Path:
    value = getattr(ctx.config.dataset, field)
    if not value:
        raise ConfigurationError(f"dataset.{field} must be set in the pipeline config")
    return ctx.require(Path(os.path.expanduser(value)).resolve(), f"dataset.{field}")


def _first(sweep: str) -> str:
    return sweep.split(",")[0].strip()


def _make_executable(path: Path) -> None:
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def _manifest(ctx: StageContext, audio_dir: Path, dest: Path, valid_percent: str) -> None:
    ctx.run(
        PYTHON,
        ctx.paths.manifest_script,
        audio_dir,
        "--dest",
        dest,
        "--ext",
        ctx.config.dataset.audio_ext,
        "--valid-percent",
        valid_percent,
    )


def _valid_only_manifest(ctx: StageContext, audio_dir: Path, dest_dir: Path) -> None:
    """Build valid.tsv in a scratch dir so the train.tsv next to it survives."""
    dest_dir.mkdir(parents=True, exist_ok=True)
    scratch = Path(tempfile.mkdtemp(prefix="val_manifest.", dir=dest_dir))
    logger.info("Using temporary directory for validation manifest: %s", scratch)
    try:
        _manifest(ctx, audio_dir, scratch, "1.0")
        produced = ctx.require(scratch / "valid.tsv", "validation manifest")
        os.replace(produced, dest_dir / "valid.tsv")
        logger.info("Moved validation manifest to %s", dest_dir / "valid.tsv")
    finally:
        shutil.rmtree(scratch, ignore_errors=True)


def _delete_if_present(path: Path, dotted: str) -> None:
    # a retried step finds the field already gone
    try:
        yaml_config.get_value(path, dotted)
    except KeyError:
        logger.info("%s already absent from %s", dotted, path)
        return
    yaml_config.delete_field(path, dotted)


def _generate(ctx: StageContext, config_name: str, overrides: list[str]) -> None:
    unsup = ctx.paths.unsupervised_dir
    ctx.run(
        PYTHON,
        unsup / "w2vu_generate.py",
        "--config-dir",
        ctx.paths.generate_config_dir,
        "--config-name",
        config_name,
        f"fairseq.common.user_dir={unsup}",
        f"fairseq.task.data={ctx.paths.precompute_dir}",
        f"fairseq.common_eval.path={ctx.paths.gan_checkpoint}",
        *overrides,
    )


def _best_decode_params(log_path: Path) -> DecodeParams | None:
    best = select_best_from_file(log_path)
    if best is None:
        logger.warning("No scored trial in %s yet; keeping the script's decode settings", log_path)
        return None
    try:
        params = DecodeParams.from_result_path(best)
    except ValueError as exc:
        raise PipelineError(str(exc)) from exc
    logger.info("Best trial in %s: %s (exp=%s, lmparam=%s)", log_path, best, params.dec_exp, params.dec_lmparam)
    return params


def _run_recipe_script(ctx: StageContext, script: Path, **options: object) -> None:
    _make_executable(script)
    ctx.run(script, cwd=ctx.paths.self_train_dir, **options)


# ------------------------------------------------------------------ setup


def verify_toolchain(ctx: StageContext) -> None:
    p = ctx.paths
    for path, what in (
        (p.fairseq_root, "fairseq checkout"),
        (p.manifest_script, "fairseq manifest script"),
        (p.kenlm_bin, "KenLM build"),
        (p.kaldi_root, "Kaldi"),
        (p.rvad_root, "rVADfast"),
        (p.vads_script, "VAD helper script"),
    ):
        ctx.require(path, what)
    logger.info("Toolchain found under %s", p.root_dir)


def download_pretrained_model(ctx: StageContext) -> None:
    download_file(ctx.config.models.pretrained_model_url, ctx.paths.pretrained_model)


def download_lid_model(ctx: StageContext) -> None:
    download_file(ctx.config.models.lid_model_url, ctx.paths.lid_model)


# ------------------------------------------------------------------ train


def create_manifests_train(ctx: StageContext) -> None:
    _manifest(ctx, _dataset_input(ctx, "train_audio"), ctx.paths.manifests_dir, "0")


def create_manifests_val(ctx: StageContext) -> None:
    _valid_only_manifest(ctx, _dataset_input(ctx, "val_audio"), ctx.paths.manifests_dir)


def create_rvad(ctx: StageContext) -> None:
    p = ctx.paths
    # vads.py expects sflux() to also return the frame count
    script_edits.replace_function_return(p.speechproc_script, "sflux", "return s_flatness, n_frames")
    for split in ("train", "valid"):
        ctx.run(
            PYTHON,
            p.vads_script,
            "-r",
            p.rvad_root,
            stdin_path=ctx.require(p.manifests_dir / f"{split}.tsv", f"{split} manifest"),
            stdout_path=p.manifests_dir / f"{split}.vads",
        )


def remove_silence(ctx: StageContext) -> None:
    p = ctx.paths
    for split, out in (("train", "train"), ("valid", "val")):
        ctx.run(
            PYTHON,
            p.unsupervised_dir / "scripts" / "remove_silence.py",
            "--tsv",
            ctx.require(p.manifests_dir / f"{split}.tsv"),
            "--vads",
            ctx.require(p.manifests_dir / f"{split}.vads"),
            "--out",
            p.nonsil_audio_dir / out,
        )


def create_manifests_nonsil_train(ctx: StageContext) -> None:
    p = ctx.paths
    _manifest(ctx, ctx.require(p.nonsil_audio_dir / "train"), p.manifests_nonsil_dir, "0")


def create_manifests_nonsil_val(ctx: StageContext) -> None:
    p = ctx.paths
    _valid_only_manifest(ctx, ctx.require(p.nonsil_audio_dir / "val"), p.manifests_nonsil_dir)


def prepare_audio(ctx: StageContext) -> None:
    p = ctx.paths
    audio = ctx.config.audio
    script = p.unsupervised_dir / "scripts" / "prepare_audio.sh"
    script_edits.replace_option_value(script, "--sample-pct", audio.sample_pct)
    script_edits.replace_option_value(script, "--batch-size", audio.batch_size)
    ctx.run(
        ctx.config.toolchain.zsh,
        script,
        p.manifests_nonsil_dir,
        p.clustering_dir,
        ctx.require(p.pretrained_model, "pre-trained wav2vec model"),
        audio.pca_dim,
        audio.feature_layer,
    )


def prepare_text(ctx: StageContext) -> None:
    p = ctx.paths
    text = ctx.config.text
    # the pykaldi build rejects std::endl in this helper
    script_edits.replace_literal(p.add_self_loop_source, "std::endl", '"\\n"')
    ctx.run(
        ctx.config.toolchain.zsh,
        p.unsupervised_dir / "scripts" / "prepare_text.sh",
        text.language,
        _dataset_input(ctx, "unlabelled_text"),
        p.text_dir,
        text.min_phones,
        text.phonemizer,
        ctx.require(p.lid_model, "language identification model"),
        text.sil_prob,
    )


def train_gans(ctx: StageContext) -> None:
    p = ctx.paths
    gan = ctx.config.gan
    config_file = p.gan_config_dir / "w2vu.yaml"
    yaml_config.set_values(
        config_file,
        {
            "task.data": p.precompute_dir,
            "task.text_data": f"{p.phones_dir}/",
            "task.kenlm_path": p.phone_lm_bin,
            "common.user_dir": p.unsupervised_dir,
            "model.code_penalty": _first(gan.code_penalty),
            "model.gradient_penalty": _first(gan.gradient_penalty),
            "model.smoothness_weight": _first(gan.smoothness_weight),
        },
    )
    for group in ("discriminator", "generator"):
        yaml_config.add_field(config_file, f"optimizer.groups.{group}.optimizer", "lr", gan.optimizer_lr)
        _delete_if_present(config_file, f"optimizer.groups.{group}.optimizer.amsgrad")

    ctx.run(
        "fairseq-hydra-train",
        "-m",
        "--config-dir",
        p.gan_config_dir,
        "--config-name",
        "w2vu",
        f"task.data={p.precompute_dir}",
        f"task.text_data={p.phones_dir}/",
        f"task.kenlm_path={p.phone_lm_bin}",
        f"common.user_dir={p.unsupervised_dir}",
        f"model.code_penalty={gan.code_penalty}",
        f"model.gradient_penalty={gan.gradient_penalty}",
        f"model.smoothness_weight={gan.smoothness_weight}",
        f"common.seed={gan.seeds}",
        env={"PREFIX": gan.experiment_prefix},
        stdout_path=p.training_log,
        merge_stderr=True,
        tee=True,
    )


# --------------------------------------------------------------- evaluate


def transcription_gans_viterbi(ctx: StageContext) -> None:
    p = ctx.paths
    ctx.require(p.gan_checkpoint, "GAN checkpoint")
    yaml_config.set_values(
        p.generate_config_dir / "viterbi.yaml",
        {
            "fairseq.task.data": p.precompute_dir,
            "fairseq.task.text_data": f"{p.phones_dir}/",
            "fairseq.common_eval.path": p.gan_checkpoint,
            "fairseq.dataset.batch_size": 1,
            "fairseq.dataset.num_workers": 0,
            "fairseq.dataset.required_batch_size_multiple": 1,
            "fairseq.dataset.gen_subset": "valid",
            "results_path": p.transcription_phones_dir,
        },
    )
    # train transcriptions become the HMM's labels
    for subset in ("valid", "train"):
        _generate(
            ctx,
            "viterbi",
            [f"fairseq.dataset.gen_subset={subset}", f"results_path={p.transcription_phones_dir}"],
        )


def transcription_gans_kaldi(ctx: StageContext) -> None:
    p = ctx.paths
    ctx.require(p.gan_checkpoint, "GAN checkpoint")
    viterbi = ctx.require(p.generate_config_dir / "viterbi.yaml")
    kaldi = p.generate_config_dir / "kaldi.yaml"
    shutil.copyfile(viterbi, kaldi)

    hlg_graph = p.words_fst_dir / "HLGa.phn.kenlm.wrd.o40003.fst"
    output_dict = p.words_fst_dir / "kaldi_dict.kenlm.wrd.o40003.txt"
    yaml_config.set_values(
        kaldi,
        {
            "fairseq.common.user_dir": p.unsupervised_dir,
            "fairseq.task.data": p.precompute_dir,
            "fairseq.common_eval.path": p.gan_checkpoint,
            "kaldi_decoder_config.hlg_graph_path": hlg_graph,
            "kaldi_decoder_config.output_dict": output_dict,
            "fairseq.task.labels": "wrd",
            "w2l_decoder": "KALDI",
            "fairseq.dataset.gen_subset": "train",
            "fairseq.dataset.batch_size": 1,
            "fairseq.dataset.num_workers": 0,
            "fairseq.dataset.required_batch_size_multiple": 1,
            "results_path": p.transcription_words_dir,
        },
    )
    for subset in ("train", "valid"):
        _generate(
            ctx,
            "kaldi",
            [
                f"kaldi_decoder_config.hlg_graph_path={hlg_graph}",
                f"kaldi_decoder_config.output_dict={output_dict}",
                "fairseq.task.labels=wrd",
                "w2l_decoder=KALDI",
                f"fairseq.dataset.gen_subset={subset}",
                f"results_path={p.transcription_words_dir}",
            ],
        )


def self_training(ctx: StageContext) -> None:
    p = ctx.paths
    recipe = ctx.require(p.unsupervised_dir / "kaldi_self_train", "kaldi_self_train recipe")
    shutil.copytree(recipe, p.kaldi_root / "egs" / "kaldi_self_train", dirs_exist_ok=True)

    train_sh = p.self_train_dir / "train.sh"
    update_variables(
        train_sh,
        {
            "w2v_dir": p.clustering_dir,
            "lab_dir": p.transcription_phones_dir,
            "out_dir": p.selftraining_dir,
            "arpa_lm": p.phone_lm_arpa,
            "arpa_lm_bin": f"{p.phone_lm_bin}/",
            "label": ctx.config.evaluation.hmm_label,
        },
    )
    # ground-truth text only exists for the validation split
    script_edits.comment_out_line(train_sh, COPY_GT_LINE)
    script_edits.insert_after_match(train_sh, COPY_GT_PATTERN, VALID_GT_BLOCK, VALID_GT_MARKER)
    _run_recipe_script(ctx, train_sh, stdout_path=p.self_train_dir / "results.txt")


def transcription_hmm_phone_eval(ctx: StageContext) -> None:
    p = ctx.paths
    st = p.self_train_dir
    variables: dict[str, object] = {
        "out_dir": p.selftraining_dir,
        "dec_script": st / "decode.sh",
        "dec_splits": ctx.config.evaluation.decode_splits,
    }
    params = _best_decode_params(st / "results.txt")
    if params is not None:
        variables.update(dec_lmparam=params.dec_lmparam, dec_exp=params.dec_exp)
    script = st / "decode_phone.sh"
    update_variables(script, variables)
    _run_recipe_script(ctx, script)


def transcription_hmm_word_eval(ctx: StageContext) -> None:
    p = ctx.paths
    st = p.self_train_dir
    variables: dict[str, object] = {
        "w2v_dir": p.clustering_dir,
        "out_dir": p.selftraining_dir,
        "lexicon": p.text_dir / "lexicon_filtered.lst",
        "wrd_arpa_lm": p.text_dir / "kenlm.wrd.o40003.arpa",
        "wrd_arpa_lm_bin": p.text_dir / "kenlm.wrd.o40003.bin",
        "dec_splits": ctx.config.evaluation.decode_splits,
        "dec_script": "steps/decode_fmllr.sh",
    }
    params = _best_decode_params(st / "results.txt")
    if params is not None:
        variables["dec_exp"] = params.dec_exp
    script = st / "decode_word_step1.sh"
    update_variables(script, variables)
    _run_recipe_script(ctx, script, stdout_path=st / "results_word.txt")


def transcription_hmm_word2_eval(ctx: StageContext) -> None:
    p = ctx.paths
    st = p.self_train_dir
    variables: dict[str, object] = {
        "out_dir": p.selftraining_dir,
        "dec_splits": ctx.config.evaluation.decode_splits,
    }
    params = _best_decode_params(st / "results_word.txt")
    if params is not None:
        variables.update(dec_exp=params.dec_exp, dec_lmparam=params.dec_lmparam)
    script = st / "decode_word_step2.sh"
    update_variables(script, variables)
    # step 2 scores the speaker-independent (.si) decode of step 1
    script_edits.substitute_pattern(script, SI_SCORING_PATTERN, r"\1.si/scoring")
    _run_recipe_script(ctx, script)


SETUP_STEPS: tuple[Step, ...] = (
    Step("verify_toolchain", verify_toolchain, "check that external tools are in place"),
    Step("download_pretrained_model", download_pretrained_model, "fetch wav2vec_vox_new.pt"),
    Step("download_lid_model", download_lid_model, "fetch the fastText language-ID model"),
)

TRAIN_STEPS: tuple[Step, ...] = (
    Step("create_manifests_train", create_manifests_train, "train audio manifest"),
    Step("create_manifests_val", create_manifests_val, "validation audio manifest"),
    Step("create_rVADfast", create_rvad, "voice activity detection"),
    Step("remove_silence", remove_silence, "strip silence using the VAD output"),
    Step("create_manifests_nonsil_train", create_manifests_nonsil_train, "train manifest without silence"),
    Step("create_manifests_nonsil_val", create_manifests_nonsil_val, "validation manifest without silence"),
    Step("prepare_audio", prepare_audio, "features, clustering and PCA"),
    Step("prepare_text", prepare_text, "phonemize text and build language models"),
    Step("train_gans", train_gans, "wav2vec-U GAN training sweep"),
)

EVALUATE_STEPS: tuple[Step, ...] = (
    Step("transcription_gans_viterbi", transcription_gans_viterbi, "GAN phone transcriptions"),
    Step("transcription_gans_kaldi", transcription_gans_kaldi, "GAN word transcriptions"),
    Step("self_training", self_training, "Kaldi HMM self-training"),
    Step("transcription_HMM_phone_eval", transcription_hmm_phone_eval, "decode phones with the best HMM"),
    Step("transcription_HMM_word_eval", transcription_hmm_word_eval, "decode words, pass 1"),
    Step("transcription_HMM_word2_eval", transcription_hmm_word2_eval, "decode words, pass 2"),
)

STAGES: dict[str, tuple[Step, ...]] = {
    "setup": SETUP_STEPS,
    "train": TRAIN_STEPS,
    "evaluate": EVALUATE_STEPS,
}
