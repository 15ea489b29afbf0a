"""Validation utilities for ticket files and generated plans."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from ticketflow.workflow.errors import PlanValidationError
from ticketflow.workflow.models import PLAN_INTENTS, Plan, PlanStep

RISK_LEVELS = ("low", "medium", "high", "critical")


class PlanValidator:
    """Static validation methods for plans and ingest inputs."""

    @staticmethod
    def validate_ticket_file(path: str | Path) -> bool:
        """Validate ticket file exists and has .yaml or .yml extension.

        Args:
            path: Path to ticket file

        Returns:
            True if valid

        Raises:
            FileNotFoundError: If file doesn't exist
            ValueError: If file doesn't have .yaml or .yml extension
        """
        file_path = Path(path)

        if not file_path.exists():
            raise FileNotFoundError(f"Ticket file not found: {path}")

        if file_path.suffix not in [".yaml", ".yml"]:
            raise ValueError(f"Ticket file must be a .yaml or .yml file: {path}")

        return True

    @staticmethod
    def normalize_plan(data: dict[str, Any]) -> dict[str, Any]:
        """Fill step defaults (``id=step_<n>``, ``intent=modify``, 30 minutes).

        Returns:
            A new plan mapping; the input is not modified
        """
        steps = []
        for index, step in enumerate(data.get("steps") or [], start=1):
            if not isinstance(step, dict):
                steps.append(step)
                continue
            normalized = dict(step)
            normalized.setdefault("id", f"step_{index}")
            normalized["intent"] = str(normalized.get("intent") or "modify").lower()
            normalized.setdefault("estimated_minutes", 30)
            normalized.setdefault("targets", [])
            normalized.setdefault("acceptance", [])
            normalized.setdefault("dependencies", [])
            normalized.setdefault("risk_factors", [])
            normalized.setdefault("rationale", "")
            steps.append(normalized)

        plan = dict(data)
        plan["steps"] = steps
        if not plan.get("files_affected"):
            paths = [
                target.get("path")
                for step in steps
                if isinstance(step, dict) and isinstance(step.get("targets"), list)
                for target in step["targets"]
                if isinstance(target, dict) and target.get("path")
            ]
            plan["files_affected"] = list(dict.fromkeys(paths))
        risk = str(plan.get("risk") or plan.get("risk_level") or "medium").lower()
        plan["risk"] = risk if risk in RISK_LEVELS else "medium"
        return plan

    @staticmethod
    def validate_plan(data: dict[str, Any]) -> list[str]:
        """Validate a normalized plan mapping against the plan schema.

        Args:
            data: Output of :meth:`normalize_plan`

        Returns:
            Non-fatal warnings

        Raises:
            PlanValidationError: If the plan does not match the schema
        """
        errors: list[str] = []
        warnings: list[str] = []

        steps = data.get("steps")
        if not isinstance(steps, list) or not steps:
            errors.append("steps: plan must contain at least one step")
            steps = []

        allowed_intents = {intent.value for intent in PLAN_INTENTS}
        step_ids = {step.get("id") for step in steps if isinstance(step, dict)}
        for index, step in enumerate(steps):
            where = f"steps[{index}]"
            if not isinstance(step, dict):
                errors.append(f"{where}: must be an object")
                continue
            if step["intent"] not in allowed_intents:
                errors.append(f"{where}.intent: '{step['intent']}' is not one of {sorted(allowed_intents)}")
            targets = step.get("targets")
            if not isinstance(targets, list):
                errors.append(f"{where}.targets: must be a list")
            else:
                for t_index, target in enumerate(targets):
                    if not isinstance(target, dict) or not target.get("path"):
                        errors.append(f"{where}.targets[{t_index}]: path is required")
            if not isinstance(step.get("estimated_minutes"), (int, float)):
                errors.append(f"{where}.estimated_minutes: must be a number")
            for dep in step.get("dependencies") or []:
                if dep not in step_ids:
                    errors.append(f"Step {step['id']} has invalid dependency: {dep}")

        for key in ("files_affected", "dependencies"):
            if key in data and not isinstance(data[key], list):
                errors.append(f"{key}: must be a list")

        hours = data.get("estimated_hours", 0) or 0
        if not isinstance(hours, (int, float)):
            errors.append("estimated_hours: must be a number")
        elif hours > 40:
            warnings.append(f"Plan estimated time is very high: {hours} hours")

        if errors:
            raise PlanValidationError("Plan validation failed: " + "; ".join(errors))
        return warnings

    @staticmethod
    def build_plan(ticket_id: int, data: dict[str, Any]) -> Plan:
        """Turn a validated plan mapping into a Plan record."""
        return Plan(
            ticket_id=ticket_id,
            steps=[PlanStep.from_dict(step) for step in data["steps"]],
            summary=str(data.get("summary") or ""),
            risk_level=data.get("risk", "medium"),
            test_strategy=str(data.get("test_strategy") or ""),
            estimated_hours=float(data.get("estimated_hours") or 0),
            files_affected=list(data.get("files_affected") or []),
            dependencies=list(data.get("dependencies") or []),
            metadata=dict(data.get("metadata") or {}),
        )
