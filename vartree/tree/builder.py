"""Tree builder: recursive node evaluation and the top-level build.

Each node evaluation runs as its own asyncio task:
1. node statistics
2. stop criteria (prune / leaf / continue)
3. split column selection
4. fan-out into one child task per distinct value, then join; a build-wide
   NodeLimiter queues children once too many nodes are doing their own work

The top-level ``build`` records the run in the ledger, races the root
evaluation against the cancel token, and finalizes or fails the run.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from ..core.errors import (
    BuildCancelled,
    ConfigurationError,
    TransientQueryFailure,
    TreeBuildError,
    ValidationFailure,
)
from ..core.models import (
    Branch,
    BranchOutcome,
    BuildRequest,
    BuildResult,
    Leaf,
    PartitionContext,
    tree_to_json,
)
from ..core.providers.base import StatsProvider
from ..core.rate_limiter import NodeLimiter, NodeSlot, QueryLimiter
from .execution import CancelToken, QueryRunner
from .fanout import fan_out
from .progress import BuildProgress
from .selector import select_split_column
from .stopping import evaluate_stop_criteria, format_cv, validate_split_preconditions

logger = logging.getLogger(__name__)


DEFAULT_ALGORITHM = "decision_tree"


class TreeBuilder:
    """Builds one regression tree from a statistics provider.

    A builder owns the progress counters and cancel token of the build it
    runs; use a fresh builder per build.
    """

    def __init__(
        self,
        provider: StatsProvider,
        ledger: Any = None,
        limiter: QueryLimiter | None = None,
        max_concurrent: int = 8,
        max_pending_nodes: int = 64,
        query_timeout: float = 30.0,
        max_retries: int = 3,
        retry_base_delay: float = 0.5,
        retry_max_delay: float = 8.0,
        token: CancelToken | None = None,
        progress: BuildProgress | None = None,
        algorithm: str = DEFAULT_ALGORITHM,
        close_provider: bool = False,
    ):
        """Initialize the builder.

        Args:
            provider: Statistics provider answering node queries
            ledger: Run ledger (RunDB) or None to skip run bookkeeping
            limiter: Shared query limiter (default: per-provider limiter)
            max_concurrent: Queries in flight when no limiter is given
            max_pending_nodes: Node evaluations doing their own work at once;
                further children queue until a slot frees up
            query_timeout: Seconds before a single query attempt times out
            max_retries: Attempts per query before the branch fails
            retry_base_delay: First backoff delay in seconds
            retry_max_delay: Backoff ceiling in seconds
            token: Cancel token (created if not given)
            progress: Progress counters (created if not given)
            algorithm: Algorithm label recorded in the ledger
            close_provider: Close the provider when the build finishes
        """
        self.provider = provider
        self.ledger = ledger
        self.limiter = limiter or QueryLimiter.for_provider(
            provider.provider_name, max_concurrent=max_concurrent
        )
        self.node_limiter = NodeLimiter(max_pending_nodes)
        self.token = token or CancelToken()
        self.progress = progress or BuildProgress()
        self.algorithm = algorithm
        self.close_provider = close_provider
        self.runner = QueryRunner(
            self.limiter,
            self.progress,
            self.token,
            timeout=query_timeout,
            max_retries=max_retries,
            base_delay=retry_base_delay,
            max_delay=retry_max_delay,
        )

    # -------------------------------------------------------------------------
    # Node evaluation
    # -------------------------------------------------------------------------

    async def evaluate(
        self, ctx: PartitionContext, slot: NodeSlot | None = None
    ) -> BranchOutcome:
        """Evaluate one node and everything below it.

        ``slot`` is this node's claim on the node limiter (None outside a
        limited fan-out); it is handed back before the children spawn, or
        when the node finishes as a leaf.

        Returns:
            ok(subtree), pruned() for an empty partition, or failed(error)
            when a statistics query for this node kept failing

        Raises:
            ValidationFailure, ConfigurationError, BuildCancelled: fatal
        """
        params = ctx.training_parameters
        self.progress.record_node_started(ctx.depth)

        try:
            stats = await self.runner.run(
                "node_stats",
                ctx,
                lambda: self.provider.node_stats(
                    ctx.table_name,
                    ctx.filter_columns,
                    ctx.filter_bindings,
                    ctx.target_column,
                ),
            )

            decision = evaluate_stop_criteria(stats, ctx.depth, ctx.remaining_columns, params)
            if decision.is_prune:
                logger.debug(f"[NODE] {ctx.describe()}: no rows, pruned")
                self.progress.record_pruned()
                return BranchOutcome.pruned()

            if decision.is_leaf:
                leaf = self._annotate(decision.leaf, ctx)
                logger.debug(
                    f"[NODE] {ctx.describe()}: leaf {leaf.prediction} "
                    f"({leaf.stopped_on}, n={stats.count})"
                )
                self.progress.record_leaf(leaf.stopped_on)
                return BranchOutcome.ok(leaf)

            validate_split_preconditions(stats, ctx)
            best = await select_split_column(self.provider, self.runner, ctx, stats)
            edges = await fan_out(
                self.evaluate,
                self.provider,
                self.runner,
                ctx,
                best.column,
                limiter=self.node_limiter,
                slot=slot,
            )

        except TransientQueryFailure as e:
            logger.warning(f"[NODE] {ctx.describe()}: branch failed - {e}")
            self.progress.record_failed()
            return BranchOutcome.failed(e)
        finally:
            if slot is not None:
                slot.release()

        branch = self._annotate(
            Branch(
                split_column=best.column,
                coefficient_of_variation=format_cv(
                    decision.coefficient_of_variation, params.cv_decimal_places
                ),
                children=edges,
            ),
            ctx,
        )
        self.progress.record_branch()
        return BranchOutcome.ok(branch)

    @staticmethod
    def _annotate(node: Leaf | Branch, ctx: PartitionContext) -> Leaf | Branch:
        """Attach the cumulative filter trace when debug messages are on."""
        if not ctx.training_parameters.debug_messages:
            return node
        return node.model_copy(
            update={
                "where_clause": ctx.filter_predicate,
                "where_bindings": list(ctx.filter_bindings),
            }
        )

    async def _evaluate_root(self, ctx: PartitionContext) -> Leaf | Branch:
        """Run the root evaluation, racing it against the cancel token."""
        root_slot = await self.node_limiter.acquire()
        root_task = asyncio.create_task(self.evaluate(ctx, root_slot), name="node:<root>")
        root_task.add_done_callback(lambda _: root_slot.release())
        cancel_task = asyncio.create_task(self.token.wait(), name="cancel-watch")
        try:
            await asyncio.wait({root_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_task.cancel()
            await asyncio.gather(cancel_task, return_exceptions=True)

        if not root_task.done():
            root_task.cancel()
            await asyncio.gather(root_task, return_exceptions=True)
            raise BuildCancelled(self.token.reason or "cancelled")

        outcome = root_task.result()
        if outcome.is_pruned:
            raise TreeBuildError(
                f"No rows in {ctx.table_name} with a non-null {ctx.target_column}"
            )
        if outcome.is_failed:
            raise TreeBuildError(f"Root evaluation failed: {outcome.error}")
        return outcome.node

    # -------------------------------------------------------------------------
    # Top-level build
    # -------------------------------------------------------------------------

    async def build(self, request: BuildRequest) -> BuildResult:
        """Build a tree for ``request`` and record the run.

        Fatal errors do not raise: they are recorded in the ledger and
        reported through ``BuildResult.status`` and ``BuildResult.error``.
        """
        params = request.training
        start = time.monotonic()
        run_id = None

        if self.ledger is not None:
            run_id = self.ledger.create_run(
                request.table_name, request.target_column, self.algorithm
            )
            self.ledger.record_training_parameters(run_id, params)

        logger.info(
            f"[BUILD] Run {run_id or '-'}: table={request.table_name} "
            f"target={request.target_column} columns={len(request.columns)} "
            f"max_depth={params.max_depth} max_features={params.max_features}"
        )

        self.token.bind()
        status = "completed"
        error: str | None = None
        tree: Leaf | Branch | None = None

        try:
            tree = await self._evaluate_root(request.root_context())
        except BuildCancelled as e:
            status, error = "cancelled", str(e)
            logger.warning(f"[BUILD] Cancelled: {e}")
        except (ValidationFailure, ConfigurationError, TreeBuildError) as e:
            status, error = "failed", str(e)
            logger.error(f"[BUILD] Failed: {e}")
        except BaseException as e:
            self._record_failure(run_id, "failed", f"{type(e).__name__}: {e}")
            raise
        finally:
            if self.close_provider:
                await self.provider.close_async()

        elapsed = time.monotonic() - start
        snapshot = self.progress.snapshot()

        if tree is None:
            self._record_failure(run_id, status, error)
        elif self.ledger is not None:
            self.ledger.finalize_run(
                run_id, tree_to_json(tree, debug_messages=params.debug_messages)
            )

        if self.ledger is not None:
            self.ledger.set_run_metadata(run_id, "progress", snapshot)
            self.ledger.set_run_metadata(run_id, "limiter", self.limiter.stats())
            self.ledger.set_run_metadata(run_id, "node_limiter", self.node_limiter.stats())

        logger.info(
            f"[BUILD] Run {run_id or '-'} {status} in {elapsed:.2f}s: "
            f"{snapshot['branches']} branches, {snapshot['leaves']} leaves, "
            f"{snapshot['pruned']} pruned, {snapshot['failed']} failed, "
            f"{snapshot['queries']} queries"
        )

        return BuildResult(
            run_id=run_id,
            status=status,
            tree=tree,
            error=error,
            debug_messages=params.debug_messages,
            stats=snapshot,
            elapsed_seconds=round(elapsed, 3),
        )

    def _record_failure(self, run_id: str | None, status: str, error: str | None) -> None:
        if self.ledger is None or run_id is None:
            return
        self.ledger.fail_run(run_id, status, error)

    def build_sync(self, request: BuildRequest) -> BuildResult:
        """Run ``build`` on a fresh event loop."""
        return asyncio.run(self.build(request))
