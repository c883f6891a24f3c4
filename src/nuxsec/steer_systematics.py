"""Steer the construction of systematic template variations.

Given the nominal templates in a template store, build every configured systematic
for the varied simulation samples:

- unisim: one up/down pair per sample and template (`nuxsec.unisim`),
- multisim: joint covariance over all varied samples (`nuxsec.multisim`), reduced
  to eigenmodes (`nuxsec.eigenmodes`), plus an optional log-normal rate systematic.

Systematics are built one at a time, and each is written to the store (with its
metadata) before the next one starts. A systematic which fails due to its
configuration, missing inputs, or degenerate inputs is skipped and recorded in its
`SystematicOutcome`, while failures of the template store abort the run.

The nominal templates themselves can be made first via `make_nominal_templates`.
"""

from __future__ import annotations

import argparse
import logging
import shutil
from collections.abc import Callable
from pathlib import Path
from typing import Any

import attrs
import yaml

from nuxsec import eigenmodes, helpers, multisim, unisim
from nuxsec.errors import (
    ConfigurationError,
    DataAvailabilityError,
    DegenerateInputError,
    SystematicsError,
)
from nuxsec.histogramming import HistogramEngine, get_engine
from nuxsec.samples import Sample, SampleListEntry, load_sample, read_sample_list
from nuxsec.systematics_config import BuildOptions, MultisimSpec, SystematicsConfig, UnisimSpec, default_systematics
from nuxsec.template_IO import TemplateStore
from nuxsec.template_spec import TemplateSpec, read_template_spec_tsv

logger = logging.getLogger(__name__)

SampleLoader = Callable[[SampleListEntry, str], Sample]

# Failures which only abort the affected systematic
_RECOVERABLE_ERRORS = (ConfigurationError, DataAvailabilityError, DegenerateInputError)


@attrs.define
class SystematicOutcome:
    """Outcome of building one configured systematic.

    Attributes:
        name: Name of the configured systematic.
        kind: "unisim" or "multisim".
        written: Names of the systematics written to the store (e.g. each eigenmode).
        error: Error which aborted the systematic, if any. Branch on `error.kind`.
    """

    name: str
    kind: str
    written: list[str] = attrs.field(factory=list)
    error: SystematicsError | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


####################################################################################################################
@attrs.define
class SteerSystematics:
    """Build all configured systematics into a template store.

    Attributes:
        store: Template store which holds the nominal templates, and receives the variations.
        engine: Histogram engine.
        config: Systematics to build.
        options: Build options.
    """

    store: TemplateStore
    engine: HistogramEngine
    config: SystematicsConfig
    options: BuildOptions = attrs.field(factory=BuildOptions)

    def varied_samples(self, samples: list[Sample]) -> list[Sample]:
        sample_filter = self.options.sample_filter
        varied = []
        for sample in samples:
            if sample_filter.accepts(sample.kind):
                varied.append(sample)
            else:
                logger.info(f"Not varying sample '{sample.name}' ({sample.kind.value})")
        return varied

    def run(self, samples: list[Sample], templates: list[TemplateSpec]) -> list[SystematicOutcome]:
        """Build every configured systematic.

        Args:
            samples: All samples. Only those accepted by the sample filter are varied.
            templates: Templates to vary.
        Returns:
            Outcome of each configured systematic, in configuration order.
        """
        varied = self.varied_samples(samples)
        logger.info(
            f"Building {len(self.config.unisim)} unisim and {len(self.config.multisim)} multisim systematics"
            f" for {len(varied)} samples and {len(templates)} templates"
        )

        outcomes = []
        with helpers.progress_bar() as progress:
            task = progress.add_task(
                "[deep_sky_blue1]Building systematics...", total=len(self.config.unisim) + len(self.config.multisim)
            )
            for unisim_spec in self.config.unisim:
                outcomes.append(
                    self._guarded(unisim_spec.name, "unisim", self.build_unisim, unisim_spec, varied, templates)
                )
                progress.update(task, advance=1)
            for multisim_spec in self.config.multisim:
                outcomes.append(
                    self._guarded(multisim_spec.name, "multisim", self.build_multisim, multisim_spec, varied, templates)
                )
                progress.update(task, advance=1)

        failed = [o for o in outcomes if not o.succeeded]
        logger.info(f"Built {len(outcomes) - len(failed)}/{len(outcomes)} systematics into {self.store.path}")
        for outcome in failed:
            logger.warning(f"  Failed: '{outcome.name}' ({outcome.error.kind if outcome.error else ''})")
        return outcomes

    def _guarded(
        self, name: str, kind: str, build: Callable[..., list[str]], *args: Any
    ) -> SystematicOutcome:
        logger.info("------------------------------------------------------------------------")
        logger.info(f"Building {kind} systematic '{name}'...")
        outcome = SystematicOutcome(name=name, kind=kind)
        try:
            outcome.written = build(*args)
        except _RECOVERABLE_ERRORS as e:
            e.with_context(systematic=name)
            logger.error(f"Skipping systematic '{name}' due to {e.kind} error: {e}")
            outcome.error = e
        else:
            logger.info(f"Done with '{name}': wrote {outcome.written}")
        return outcome

    def build_unisim(self, spec: UnisimSpec, samples: list[Sample], templates: list[TemplateSpec]) -> list[str]:
        """Build and write one unisim systematic for every varied sample."""
        if not samples:
            logger.warning(f"No varied samples, so nothing to do for '{spec.name}'")
            self.store.remove_systematics(lambda name: name == spec.name)
            return []
        # Compute all samples before writing anything, so a failure doesn't leave a partial systematic
        variations = [unisim.build_unisim(sample, templates, spec, self.engine) for sample in samples]
        # Samples which are no longer varied mustn't keep their previous variations
        self.store.remove_systematics(lambda name: name == spec.name)
        for variation in variations:
            self.store.write_systematic_variations(variation.as_variations())
        self.store.write_syst_meta(spec.name, unisim.unisim_metadata(spec))
        return [spec.name]

    def build_multisim(self, spec: MultisimSpec, samples: list[Sample], templates: list[TemplateSpec]) -> list[str]:
        """Build and write one multisim systematic: rate (optional) and eigenmodes."""
        if not samples:
            logger.warning(f"No varied samples, so nothing to do for '{spec.name}'")
            self.store.remove_systematics(spec.owns_output)
            return []
        result = multisim.build_multisim_covariance(samples, templates, spec, self.engine, self.store)
        modes = eigenmodes.select_eigenmodes(result.covariance, max_modes=spec.max_modes, keep_fraction=spec.keep_fraction)

        # A previous run may have kept more modes, or written a rate systematic
        self.store.remove_systematics(spec.owns_output)
        written = []
        rate = result.rate_variation()
        if rate:
            self.store.write_systematic_variations(rate)
            written.append(spec.rate_name)
            logger.info(f"Rate systematic '{spec.rate_name}': sigma_theta = {result.sigma_theta:.5g}")

        self.store.write_syst_meta(spec.name, eigenmodes.multisim_metadata(result.n_universes, len(modes)))
        for mode_variations in eigenmodes.eigenmode_variations(result, modes, self.options.clamp_negative_bins):
            self.store.write_systematic_variations(mode_variations)
            written.append(mode_variations[0].systematic_name)
        return written


def make_nominal_templates(
    samples: list[Sample],
    templates: list[TemplateSpec],
    store: TemplateStore,
    engine: HistogramEngine,
    template_spec_path: Path | str | None = None,
) -> None:
    """Make the nominal template of every sample, and write them with the sample metadata.

    Args:
        samples: Samples of any kind.
        templates: Templates to make.
        store: Template store to write to.
        engine: Histogram engine.
        template_spec_path: Path of the template catalogue, recorded in the global metadata.
    Returns:
        None.
    """
    if template_spec_path is not None:
        store.write_global_meta({"template_spec_path": str(template_spec_path)})

    with helpers.progress_bar() as progress:
        task = progress.add_task("[deep_sky_blue1]Making nominal templates...", total=len(samples))
        for sample in samples:
            bookings = {
                t.name: engine.book(
                    sample.events, t.selection, t.variable, t.weight_or(sample.nominal_weight), t.binning
                )
                for t in templates
            }
            try:
                engine.evaluate(list(bookings.values()))
            except SystematicsError as e:
                e.with_context(sample=sample.name)
                raise
            store.write_histograms(sample.name, {name: p.result for name, p in bookings.items()})  # type: ignore[misc]
            store.write_sample_meta(
                sample.name,
                {"sample_kind": sample.kind.value, "beam_mode": sample.beam_mode, "sample_path": sample.source_path},
            )
            logger.info(f"Wrote {len(templates)} nominal templates for '{sample.name}' ({sample.kind.value})")
            progress.update(task, advance=1)


def _load_samples(
    entries: list[SampleListEntry], tree_name: str, sample_loader: SampleLoader
) -> list[Sample]:
    return [sample_loader(entry, tree_name) for entry in entries]


def build_all(
    sample_list_path: Path | str,
    tree_name: str,
    template_spec_list: list[TemplateSpec],
    template_store_path: Path | str,
    systematics_config: SystematicsConfig,
    options: BuildOptions,
    sample_loader: SampleLoader = load_sample,
) -> list[SystematicOutcome]:
    """Build all systematics for the samples of a sample list.

    Only the samples which are varied are loaded.

    Args:
        sample_list_path: Path to the sample list.
        tree_name: Name of the event tree.
        template_spec_list: Templates to vary. Their nominals must already be in the store.
        template_store_path: Path to the template store.
        systematics_config: Systematics to build.
        options: Build options.
        sample_loader: Loads a sample from its sample list entry. Default: `samples.load_sample`.
    Returns:
        Outcome of each configured systematic.
    """
    entries = read_sample_list(sample_list_path)
    sample_filter = options.sample_filter
    varied_entries = [e for e in entries if sample_filter.accepts(e.kind)]
    logger.info(f"Varying {len(varied_entries)}/{len(entries)} samples from {sample_list_path}")

    steer = SteerSystematics(
        store=TemplateStore(template_store_path),
        engine=get_engine(options.engine, thread_count=options.thread_count),
        config=systematics_config,
        options=options,
    )
    samples = _load_samples(varied_entries, tree_name, sample_loader)
    return steer.run(samples, template_spec_list)


####################################################################################################################
@attrs.frozen
class RunConfig:
    """Configuration of a full run, usually read from YAML.

    Attributes:
        sample_list: Path to the sample list.
        tree_name: Name of the event tree in the sample files.
        template_spec: Path to the template catalogue.
        template_store: Path to the template store.
        make_nominal: If True, make the nominal templates before the systematics. Default: False.
        systematics: Systematics to build. Default: `default_systematics()`.
        options: Build options.
        reduce_logging_to_file: If True, don't write the log and config next to the store. Default: False.
    """

    sample_list: Path = attrs.field(converter=Path)
    tree_name: str
    template_spec: Path = attrs.field(converter=Path)
    template_store: Path = attrs.field(converter=Path)
    make_nominal: bool = False
    systematics: SystematicsConfig = attrs.field(factory=default_systematics)
    options: BuildOptions = attrs.field(factory=BuildOptions)
    reduce_logging_to_file: bool = False

    @classmethod
    def from_config(cls, config: dict[str, Any], base_dir: Path | None = None) -> RunConfig:
        """Construct from a dict.

        "systematics" may be an inline catalogue, or the path to a YAML catalogue
        (relative to base_dir). If it's not specified, the default catalogue is used.
        """
        base_dir = base_dir if base_dir is not None else Path.cwd()
        try:
            raw_systematics = config.get("systematics")
            if raw_systematics is None:
                systematics = default_systematics()
            elif isinstance(raw_systematics, str):
                systematics = SystematicsConfig.from_config_file(base_dir / raw_systematics)
            else:
                systematics = SystematicsConfig.from_config(raw_systematics)

            return cls(
                sample_list=config["sample_list"],
                tree_name=config["tree_name"],
                template_spec=config["template_spec"],
                template_store=config["template_store"],
                make_nominal=config.get("make_nominal", False),
                systematics=systematics,
                options=BuildOptions.from_config(config.get("options")),
                reduce_logging_to_file=config.get("reduce_logging_to_file", False),
            )
        except KeyError as e:
            msg = f"Run configuration is missing the required setting {e}"
            raise ConfigurationError(msg) from e

    @classmethod
    def from_config_file(cls, config_file: str | Path) -> RunConfig:
        config_file = Path(config_file)
        try:
            with config_file.open() as stream:
                config = yaml.safe_load(stream)
        except (OSError, yaml.YAMLError) as e:
            msg = f"Failed to read run configuration {config_file}"
            raise ConfigurationError(msg, key=str(config_file)) from e
        return cls.from_config(config=config or {}, base_dir=config_file.parent)


def run(run_config: RunConfig, config_file: Path | None = None, sample_loader: SampleLoader = load_sample) -> list[SystematicOutcome]:
    """Run the nominal template maker (optionally) and the systematics builders.

    Args:
        run_config: Run configuration.
        config_file: Path of the run configuration, copied next to the store for reproducibility.
        sample_loader: Loads a sample from its sample list entry.
    Returns:
        Outcome of each configured systematic.
    """
    templates = read_template_spec_tsv(run_config.template_spec)

    # Keep track of log and config for each run for reproducibility.
    file_handler = None
    if not run_config.reduce_logging_to_file:
        output_dir = run_config.template_store.parent
        output_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(output_dir / "steer_systematics.log", "w")
        logging.getLogger().addHandler(file_handler)
        if config_file is not None:
            shutil.copy(config_file, output_dir / "steer_systematics_config.yaml")

    # Samples may be needed by both stages, so only load them once
    loaded: dict[str, Sample] = {}

    def cached_loader(entry: SampleListEntry, tree_name: str) -> Sample:
        if entry.name not in loaded:
            loaded[entry.name] = sample_loader(entry, tree_name)
        return loaded[entry.name]

    try:
        if run_config.make_nominal:
            logger.info("------------------------------------------------------------------------")
            logger.info("Making nominal templates...")
            entries = read_sample_list(run_config.sample_list)
            make_nominal_templates(
                samples=_load_samples(entries, run_config.tree_name, cached_loader),
                templates=templates,
                store=TemplateStore(run_config.template_store),
                engine=get_engine(run_config.options.engine, thread_count=run_config.options.thread_count),
                template_spec_path=run_config.template_spec,
            )

        return build_all(
            sample_list_path=run_config.sample_list,
            tree_name=run_config.tree_name,
            template_spec_list=templates,
            template_store_path=run_config.template_store,
            systematics_config=run_config.systematics,
            options=run_config.options,
            sample_loader=cached_loader,
        )
    finally:
        if file_handler is not None:
            logging.getLogger().removeHandler(file_handler)
            file_handler.close()


def main() -> None:
    helpers.setup_logging(level=logging.INFO)

    parser = argparse.ArgumentParser(description="Build systematic template variations")
    parser.add_argument(
        "-c",
        "--config",
        help="Path of the run configuration",
        action="store",
        type=Path,
        default=Path("config/run.yaml"),
    )
    parser.add_argument(
        "-t",
        "--thread-count",
        help="Number of threads used by the histogram engine. Overrides the run configuration.",
        action="store",
        type=int,
        default=None,
    )
    args = parser.parse_args()

    logger.info("Configuring...")
    logger.info(f"  config: {args.config}")

    # If invalid config is given, exit
    if not args.config.exists():
        msg = f"File {args.config} does not exist! Exiting!"
        logger.info(msg)
        raise ValueError(msg)

    run_config = RunConfig.from_config_file(args.config)
    if args.thread_count is not None:
        run_config = attrs.evolve(run_config, options=attrs.evolve(run_config.options, thread_count=args.thread_count))

    outcomes = run(run_config, config_file=args.config)
    if not all(o.succeeded for o in outcomes):
        raise SystemExit(1)


if __name__ == "__main__":
    main()
