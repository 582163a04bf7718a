"""
Approval Pipeline Example

A purchase request is priced, checked against budget, and, when it is
large enough, held for a manager's approval before the order is placed.

    prepare ─┬─ price ──┬─ approve (human, only when total > 1000) ── place_order
             └─ budget ─┘

Usage:
    dagflow validate examples.approval_pipeline:workflow
    dagflow run examples.approval_pipeline:workflow \\
        --input '{"prepare": {"item": "laptop", "quantity": 3, "unit_price": 950}}'
    dagflow resume examples.approval_pipeline:workflow <run_id> --approve

    # or directly
    python -m examples.approval_pipeline
"""

import asyncio
import json
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from pydantic import BaseModel

from dagflow import HumanInputResponse, RetryPolicy, Workflow, create_step, human_step

APPROVAL_THRESHOLD = 1000.0


class Quote(BaseModel):
    item: str
    quantity: int
    total: float


def prepare(request, ctx):
    request = dict(request or {})
    request.setdefault("item", "widget")
    request.setdefault("quantity", 1)
    request.setdefault("unit_price", 10.0)
    return request


async def price(_input, ctx):
    req = ctx.get("prepare")
    await asyncio.sleep(0)
    return {
        "item": req["item"],
        "quantity": req["quantity"],
        "total": round(req["quantity"] * req["unit_price"], 2),
    }


def budget(_input, ctx):
    return {"remaining": 5000.0}


def needs_approval(ctx):
    return ctx.get_as("price", Quote).total > APPROVAL_THRESHOLD


def approval_prompt(ctx):
    quote = ctx.get_as("price", Quote)
    return (f"Order {quote.quantity} x {quote.item} for {quote.total:.2f}"
            f" (budget left {ctx.get('budget')['remaining']:.2f})?")


def place_order(_input, ctx):
    quote = ctx.get_as("price", Quote)
    approved_by = "manager" if "approve" in ctx else "auto"
    return {"order": f"PO-{quote.item.upper()}-{quote.quantity}", "approved_by": approved_by}


def build_workflow() -> Workflow:
    return (
        Workflow("approval_pipeline")
        .step(create_step("prepare", prepare))
        .step(create_step("price", price, output_schema=Quote), after="prepare")
        .step(create_step("budget", budget,
                          retry_policy=RetryPolicy(max_retries=2, delay_ms=50)),
              after="prepare")
        .step(human_step("approve"), after=["price", "budget"], type="human",
              when=needs_approval, prompt=approval_prompt, timeout=24 * 3600)
        .step(create_step("place_order", place_order), after="approve")
    )


workflow = build_workflow()


async def main():
    request = {"item": "laptop", "quantity": 3, "unit_price": 950.0}
    result = await workflow.execute({"prepare": request})
    print(f"status: {result.status.value}")
    if result.is_pending:
        print(f"prompt: {result.pending.prompt}")
        result = await workflow.resume(
            result.run_id,
            HumanInputResponse(request_id=result.pending.request_id, approved=True),
        )
        print(f"status: {result.status.value}")
    print(json.dumps(result.state, indent=2, default=str))


if __name__ == "__main__":
    asyncio.run(main())
