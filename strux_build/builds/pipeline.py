"""Cache-aware orchestration of build steps and lifecycle scripts.

The pipeline asks the cache whether a step or script must run, invokes
the caller's action when it must, and records the cache entry only after
the action returned without raising. A failed or interrupted action
leaves the manifest exactly as it was.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from functools import partial

from strux_build import __version__
from strux_build.boards.schema import LifecycleScriptSchema
from strux_build.builds.runner import ScriptExecutionError
from strux_build.cache.assets import get_asset_registry
from strux_build.cache.decision import should_rebuild_step, update_step_cache
from strux_build.cache.environment import BuildEnvironmentInvalidator
from strux_build.cache.hashing import AssetRegistry
from strux_build.cache.manifest import CacheManifest, CacheStore, StepCacheEntry
from strux_build.cache.scripts import (
    record_script_run,
    resolve_script_path,
    script_cache_key,
    should_skip_script,
)
from strux_build.types import (
    PIPELINE_ORDER,
    BuildContext,
    BuildStep,
    RebuildDecision,
    ScriptStage,
    StepOutcome,
)

logger = logging.getLogger(__name__)

StepAction = Callable[[], None]
ScriptExecutor = Callable[[LifecycleScriptSchema], None]

# Full build: lifecycle stages wrap the build steps they are named after.
# Kernel and bootloader stages have no step of their own yet.
BUILD_SEQUENCE: tuple[BuildStep | ScriptStage, ...] = (
    ScriptStage.BEFORE_BUILD,
    ScriptStage.BEFORE_FRONTEND,
    BuildStep.FRONTEND,
    ScriptStage.AFTER_FRONTEND,
    ScriptStage.BEFORE_APPLICATION,
    BuildStep.APPLICATION,
    ScriptStage.AFTER_APPLICATION,
    ScriptStage.BEFORE_CAGE,
    BuildStep.CAGE,
    ScriptStage.AFTER_CAGE,
    ScriptStage.BEFORE_WPE,
    BuildStep.WPE,
    ScriptStage.AFTER_WPE,
    ScriptStage.BEFORE_CLIENT,
    BuildStep.CLIENT,
    ScriptStage.AFTER_CLIENT,
    ScriptStage.BEFORE_KERNEL,
    ScriptStage.AFTER_KERNEL,
    ScriptStage.BEFORE_BOOTLOADER,
    ScriptStage.AFTER_BOOTLOADER,
    ScriptStage.BEFORE_ROOTFS,
    BuildStep.ROOTFS_BASE,
    ScriptStage.AFTER_ROOTFS,
    BuildStep.ROOTFS_POST,
    ScriptStage.BEFORE_BUNDLE,
    ScriptStage.MAKE_IMAGE,
    ScriptStage.AFTER_BUILD,
)


@dataclass
class ScriptOutcome:
    """What happened to one lifecycle script."""

    script: LifecycleScriptSchema
    cache_key: str
    skipped: bool


@dataclass
class BuildReport:
    """What a full build did."""

    steps: list[StepOutcome] = field(default_factory=list)
    scripts: list[ScriptOutcome] = field(default_factory=list)

    @property
    def steps_run(self) -> list[BuildStep]:
        return [outcome.step for outcome in self.steps if outcome.ran]

    @property
    def scripts_run(self) -> int:
        return sum(1 for outcome in self.scripts if not outcome.skipped)


class BuildPipeline:
    """Runs build steps and lifecycle scripts against one board's manifest."""

    def __init__(
        self,
        ctx: BuildContext,
        store: CacheStore,
        manifest: CacheManifest,
        cache_enabled: bool = True,
        registry: AssetRegistry | None = None,
    ) -> None:
        self.ctx = ctx
        self.store = store
        self.manifest = manifest
        self.cache_enabled = cache_enabled
        self.registry = registry if registry is not None else get_asset_registry()

    @classmethod
    def open(
        cls,
        ctx: BuildContext,
        cache_enabled: bool = True,
        registry: AssetRegistry | None = None,
    ) -> BuildPipeline:
        """Create a pipeline with the board's manifest loaded from disk."""
        store = CacheStore(ctx.project_root)
        return cls(ctx, store, store.load(ctx.target), cache_enabled, registry)

    def decide(self, step: BuildStep | str) -> RebuildDecision:
        """Return the cache verdict for a step."""
        if not self.cache_enabled:
            return RebuildDecision(True, "build cache disabled")
        return should_rebuild_step(step, self.manifest, self.ctx, self.registry)

    def check_step(self, step: BuildStep | str) -> bool:
        """Return True if the step must run, logging why."""
        step = BuildStep(step)
        decision = self.decide(step)
        if decision.rebuild:
            logger.info("Rebuilding %s: %s", step.value, decision.reason)
        else:
            logger.info("Cached: %s (no changes detected)", step.value)
        return decision.rebuild

    def record_step(self, step: BuildStep | str) -> StepCacheEntry | None:
        """Record a successful step run; no-op with the cache disabled."""
        if not self.cache_enabled:
            return None
        return update_step_cache(step, self.manifest, self.ctx, self.store, self.registry)

    def run_step(self, step: BuildStep | str, action: StepAction) -> StepOutcome:
        """Run a step's action if the cache says so, then record it.

        Args:
            step: Build step.
            action: Callable performing the step; raises on failure.

        Returns:
            StepOutcome describing what happened.
        """
        step = BuildStep(step)
        decision = self.decide(step)
        if not decision.rebuild:
            logger.info("Cached: %s (no changes detected)", step.value)
            return StepOutcome(step=step, decision=decision, ran=False)

        logger.info("Rebuilding %s: %s", step.value, decision.reason)
        action()
        entry = self.record_step(step)
        return StepOutcome(step=step, decision=decision, ran=True, recorded=entry is not None)

    def plan(self) -> list[tuple[BuildStep, RebuildDecision]]:
        """Return the current verdict of every step, in pipeline order.

        Decisions are made against the manifest as it is; steps that would
        rebuild do not update the manifest, so upstream effects of a rerun
        show up only once it has been recorded.
        """
        return [(step, self.decide(step)) for step in PIPELINE_ORDER]

    def run_scripts(
        self,
        stage: ScriptStage | str,
        scripts: Iterable[LifecycleScriptSchema],
        executor: ScriptExecutor,
    ) -> list[ScriptOutcome]:
        """Run the lifecycle scripts of one stage.

        Args:
            stage: Pipeline stage.
            scripts: Scripts declared for the stage, in order.
            executor: Callable running one script; raises on failure.

        Returns:
            One ScriptOutcome per script.

        Raises:
            ScriptExecutionError: If a script file does not exist.
        """
        stage = ScriptStage(stage)
        outcomes: list[ScriptOutcome] = []

        for script in scripts:
            cache_key = script_cache_key(self.ctx.target, stage, script.location)

            if self.cache_enabled and should_skip_script(
                script, cache_key, self.manifest, self.ctx
            ):
                logger.info("Skipping script: %s", script.display_name)
                outcomes.append(ScriptOutcome(script, cache_key, skipped=True))
                continue

            script_path = resolve_script_path(script.location, self.ctx)
            if not script_path.is_file():
                raise ScriptExecutionError(
                    f"Script {script_path} for board {self.ctx.target} and "
                    f"stage {stage.value} not found",
                    code="script_not_found",
                )

            logger.info("Running script: %s (%s)", script.display_name, stage.value)
            executor(script)
            record_script_run(script, cache_key, self.manifest, self.ctx, self.store)
            logger.info("Completed script: %s", script.display_name)
            outcomes.append(ScriptOutcome(script, cache_key, skipped=False))

        return outcomes

    def prepare_environment(
        self,
        image_exists: Callable[[], bool],
        build_image: Callable[[], None],
    ) -> bool:
        """Make sure the builder image matches the bundled recipe.

        The image is (re)built when it is missing or when the manifest
        recorded a different recipe. A rebuild drops all step entries.

        Args:
            image_exists: Returns whether the image is present.
            build_image: Builds the image; raises on failure.

        Returns:
            True if the image was built.
        """
        invalidator = BuildEnvironmentInvalidator(self.registry, __version__)
        recorded = self.manifest.build_environment_hash
        changed = recorded is not None and invalidator.should_rebuild_environment(
            self.manifest
        )

        rebuilt = False
        if changed or not image_exists():
            if changed:
                logger.info("Builder recipe changed, rebuilding builder image...")
            build_image()
            rebuilt = True

        invalidator.sync(self.manifest, rebuilt, self.store, self.ctx.target)
        return rebuilt

    def build(
        self,
        step_action: Callable[[BuildStep], None],
        stage_scripts: Callable[[ScriptStage], list[LifecycleScriptSchema]],
        stage_executor: Callable[[ScriptStage], ScriptExecutor],
    ) -> BuildReport:
        """Run every stage and step of a full build in order.

        Steps go through run_step, so cached steps are skipped and each
        rebuilt step is recorded before the next one is decided. A step
        rebuilt here therefore invalidates the steps depending on it
        within the same build.

        Args:
            step_action: Performs one build step; raises on failure.
            stage_scripts: Returns the board's scripts for a stage.
            stage_executor: Returns the script executor for a stage.

        Returns:
            BuildReport of the steps and scripts handled.
        """
        report = BuildReport()
        for item in BUILD_SEQUENCE:
            if isinstance(item, BuildStep):
                report.steps.append(self.run_step(item, partial(step_action, item)))
                continue

            scripts = stage_scripts(item)
            if scripts:
                report.scripts.extend(self.run_scripts(item, scripts, stage_executor(item)))

        logger.info(
            "Build finished: %d steps rebuilt, %d scripts run",
            len(report.steps_run),
            report.scripts_run,
        )
        return report


__all__ = [
    "BUILD_SEQUENCE",
    "BuildPipeline",
    "BuildReport",
    "ScriptExecutor",
    "ScriptOutcome",
    "StepAction",
]
