"""Batched dispatch of one action across a node set.

Nodes are split into consecutive batches of at most batch_size. Each
batch is one RPC call and batches run strictly one after another, so at
most batch_size nodes are busy at any time. Every batch is dispatched even
when an earlier one failed; deciding what a failure means is left to the
caller.

Node classification:
- reply with statuscode 0: succeeded
- reply with any other statuscode: failed
- no reply: timeout
- transport timeout: the whole batch is timeout
- any other transport error: the whole batch is failed
"""

import logging
import time
from typing import Any, Dict, List, Optional

import Conductor.Helpers.logSettings as logLevel
from Conductor.Core.metrics import record_node_result, record_rpc_batch
from Conductor.Core.playbook.models import DispatchReport, NodeResult, NodeStatus
from Conductor.Core.rpc import RpcError, RpcTimeout
from Conductor.Core.telemetry import get_current_trace_id, get_tracer

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

tracer = get_tracer(__name__)


class Orchestrator:
    """Drives one RPC request per batch of nodes."""

    def __init__(self, playbook: Any, client: Any, batch_size: int):
        if int(batch_size) < 1:
            raise ValueError(f"Batch size must be at least 1, got {batch_size}")
        self.playbook = playbook
        self.client = client
        self.batch_size = int(batch_size)

    def batches(self, nodes: List[str]) -> List[List[str]]:
        """Split nodes into consecutive batches of at most batch_size."""
        nodes = list(nodes)
        return [
            nodes[i:i + self.batch_size]
            for i in range(0, len(nodes), self.batch_size)
        ]

    def _run_as(self) -> Optional[str]:
        run_as = getattr(self.playbook, "run_as", None)
        return run_as or None

    def _log_extra(self) -> Dict[str, Any]:
        return {"playbook.context": getattr(self.playbook, "context", None) or "playbook"}

    def _dispatch_batch(
        self,
        report: DispatchReport,
        batch: List[str],
        number: int,
        properties: Dict[str, Any],
        timeout: Optional[int],
    ) -> None:
        agent, action = report.agent, report.action

        with tracer.start_as_current_span(f"rpc {agent}/{action}") as span:
            span.set_attribute("rpc.system", "conductor")
            span.set_attribute("rpc.service", agent)
            span.set_attribute("rpc.method", action)
            span.set_attribute("conductor.batch", number)
            span.set_attribute("conductor.batch.size", len(batch))

            started = time.monotonic()
            try:
                replies = self.client.dispatch(
                    agent=agent,
                    action=action,
                    arguments=properties,
                    nodes=batch,
                    timeout=timeout,
                    run_as=self._run_as(),
                )
            except RpcTimeout as e:
                logger.log(level=30, msg=f"Batch {number} timed out: {e}", extra=self._log_extra())
                span.set_attribute("error.type", "timeout")
                for node in batch:
                    report.record(NodeResult(node=node, status=NodeStatus.TIMEOUT,
                                             batch=number, error=str(e)))
                return
            except RpcError as e:
                logger.log(level=30, msg=f"Batch {number} failed: {e}", extra=self._log_extra())
                span.set_attribute("error.type", "rpc_error")
                for node in batch:
                    report.record(NodeResult(node=node, status=NodeStatus.FAILED,
                                             batch=number, error=str(e)))
                return
            finally:
                record_rpc_batch(agent, action, time.monotonic() - started,
                                 get_current_trace_id())

            by_sender = {reply.sender: reply for reply in replies or []}

            for node in batch:
                reply = by_sender.get(node)
                if reply is None:
                    result = NodeResult(node=node, status=NodeStatus.TIMEOUT, batch=number,
                                        error="No response received")
                elif reply.statuscode == 0:
                    result = NodeResult(node=node, status=NodeStatus.SUCCEEDED, batch=number,
                                        statuscode=0, data=dict(reply.data or {}))
                else:
                    result = NodeResult(node=node, status=NodeStatus.FAILED, batch=number,
                                        statuscode=reply.statuscode,
                                        data=dict(reply.data or {}),
                                        error=reply.statusmsg or None)
                report.record(result)

            failed = [n for n in batch if not report.results[n].succeeded]
            span.set_attribute("conductor.batch.failed", len(failed))

    def dispatch(
        self,
        nodes: List[str],
        agent: str,
        action: str,
        properties: Optional[Dict[str, Any]] = None,
        timeout: Optional[int] = None,
    ) -> DispatchReport:
        """
        Dispatch an action to every node, one batch at a time.

        Args:
            nodes: Node names to target
            agent: RPC agent
            action: RPC action
            properties: Action arguments
            timeout: Per batch timeout in seconds

        Returns:
            DispatchReport with a result for every node
        """
        report = DispatchReport(agent=agent, action=action, nodes=list(dict.fromkeys(nodes)))
        batches = self.batches(report.nodes)
        properties = dict(properties or {})

        logger.log(
            level=20,
            msg=f"Dispatching {agent}#{action} to {len(report.nodes)} "
                f"nodes in {len(batches)} batches of {self.batch_size}",
            extra=self._log_extra(),
        )

        for number, batch in enumerate(batches, start=1):
            self._dispatch_batch(report, batch, number, properties, timeout)
            report.batches += 1

            logger.log(
                level=10,
                msg=f"Batch {number}/{len(batches)} done: "
                    f"{sum(1 for n in batch if report.results[n].succeeded)}/{len(batch)} ok",
                extra=self._log_extra(),
            )

        for node in report.nodes:
            record_node_result(agent, action, report.results[node].status.value)

        return report
