"""``file_exists``: verify watched paths exist under the task root."""

from __future__ import annotations

from datetime import UTC, datetime

from task_sync.services.handlers import StepRun, failure, success


async def run(ctx: StepRun) -> None:
    config = ctx.config
    if not config.files:
        await ctx.record(failure("'file_exists.files' is present but contains no paths"))
        return

    errors: list[str] = []
    observed: dict[str, str] = {}
    for relative in sorted(config.files):
        target = ctx.base_path / relative
        try:
            stat = target.stat()
        except FileNotFoundError:
            errors.append(f"file not found: {relative}")
            continue
        except OSError as exc:
            errors.append(f"error checking file '{relative}': {exc}")
            continue
        observed[relative] = datetime.fromtimestamp(stat.st_mtime, tz=UTC).isoformat(timespec="seconds")

    if errors:
        ctx.logger.info("file_exists.missing", extra={"errors": errors})
        await ctx.record(failure("; ".join(errors), missing=errors))
        return

    updated = config.model_copy(update={"files": observed})
    await ctx.finish(success("all files found", files=observed), config=updated)
