from __future__ import annotations

import argparse
import asyncio
import getpass
import sys
from typing import Any, Callable, List, Optional, Sequence

from pipedash.context import DashboardContext
from pipedash.controllers.filters import Predicate
from pipedash.controllers.resource import ResourceController
from pipedash.controllers.resources import build_filter, deployment_filter, pipeline_filter, project_filter
from pipedash.dashboard.stats import recent, status_counts
from pipedash.errors import ActionFailed, GatewayError
from pipedash.logs.viewer import ViewerState
from pipedash.models import Build, Deployment, Pipeline, Project
from pipedash.settings import Settings
from pipedash.telemetry.audit import tail_jsonl

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_SIGNED_OUT = 2


def _fmt_build(b: Build) -> str:
    dur = f"{b.duration_s}s" if b.duration_s is not None else "-"
    return f"#{b.id:<6} {b.status.value:<10} {b.ref:<24} {b.short_commit:<8} {b.image_name}:{b.image_tag}  {dur}"


def _fmt_deployment(d: Deployment) -> str:
    host = d.ingress_host or "-"
    return (
        f"#{d.id:<6} {d.environment.value:<8} {d.status.value:<10} {d.service_name:<24} "
        f"{d.namespace:<16} x{d.replicas}  build #{d.build_id}  {host}"
    )


def _fmt_project(p: Project) -> str:
    return f"#{p.id:<6} {p.name:<28} {p.git_provider:<8} {p.git_url}"


def _fmt_pipeline(p: Pipeline) -> str:
    return f"#{p.id:<6} {p.name:<28} project #{p.project_id:<6} {p.status}"


async def _show(
    ctrl: ResourceController,
    predicate: Predicate,
    fmt: Callable[[Any], str],
    *,
    watch_s: float | None = None,
) -> int:
    ctrl.set_filter(predicate)
    if watch_s:

        def _render(c: ResourceController) -> None:
            if c.loading:
                return
            print(f"-- {c.name}: {len(c.view())} shown / {len(c.items)} total")
            for item in c.view():
                print(fmt(item))

        ctrl.subscribe(_render)
        ctrl.start()
        try:
            await asyncio.sleep(float(watch_s))
        finally:
            ctrl.stop()
            await ctrl.wait_idle()
        return EXIT_OK

    ctrl.start()
    await ctrl.wait_idle()
    ctrl.stop()
    if ctrl.last_error is not None:
        return EXIT_FAILED
    for item in ctrl.view():
        print(fmt(item))
    return EXIT_OK


async def _dispatch(ctx: DashboardContext, args: argparse.Namespace) -> int:
    cmd = args.command

    if cmd == "login":
        password = args.password if args.password is not None else getpass.getpass("Password: ")
        user = await ctx.login(args.username, password)
        print(f"signed in as {user.username}")
        return EXIT_OK
    if cmd == "logout":
        ctx.logout()
        print("signed out")
        return EXIT_OK
    if cmd == "events":
        for rec in tail_jsonl(ctx.settings.audit_log_path, max_lines=int(args.limit)):
            print(f"{rec.ts} {rec.actor:<24} {rec.event_type:<36} {rec.payload}")
        return EXIT_OK

    if not ctx.session.is_authenticated:
        print("not signed in; run `pipedash login USERNAME` first", file=sys.stderr)
        return EXIT_SIGNED_OUT

    if cmd == "whoami":
        user = ctx.session.user
        print(f"{user.username} <{user.email}> role={user.role}")
        return EXIT_OK
    if cmd == "projects":
        return await _show(ctx.projects(), project_filter(args.search), _fmt_project)
    if cmd == "pipelines":
        return await _show(ctx.pipelines(project_id=args.project), pipeline_filter(args.search), _fmt_pipeline)
    if cmd == "builds":
        return await _show(
            ctx.builds(pipeline_id=args.pipeline), build_filter(args.search), _fmt_build, watch_s=args.watch
        )
    if cmd == "deployments":
        return await _show(
            ctx.deployments(build_id=args.build, environment=args.env),
            deployment_filter(args.search),
            _fmt_deployment,
            watch_s=args.watch,
        )
    if cmd == "logs":
        viewer = ctx.build_logs() if args.kind == "build" else ctx.deployment_logs()
        state = await viewer.open(args.id)
        print(viewer.text)
        viewer.close()
        return EXIT_OK if state is ViewerState.loaded else EXIT_FAILED
    if cmd == "cancel":
        build = await ctx.api.get_build(args.id)
        await ctx.actions.cancel_build(build)
        print(f"build #{build.id} cancelled")
        return EXIT_OK
    if cmd == "rollback":
        deployment = await ctx.api.get_deployment(args.id)
        await ctx.actions.rollback_deployment(deployment)
        print(f"deployment #{deployment.id} rolled back")
        return EXIT_OK
    if cmd == "run":
        await ctx.actions.run_pipeline(args.id)
        print(f"pipeline #{args.id} started")
        return EXIT_OK
    if cmd == "stats":
        builds, deployments = await asyncio.gather(ctx.api.list_builds(), ctx.api.list_deployments())
        for label, items in (("builds", builds), ("deployments", deployments)):
            s = status_counts(items)
            print(
                f"{label:<12} total={s.total} running={s.running} success={s.success} "
                f"failed={s.failed} pending={s.pending} cancelled={s.cancelled}"
            )
        for b in recent(builds):
            print(_fmt_build(b))
        return EXIT_OK

    raise ValueError(f"unknown command: {cmd}")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="pipedash", description="CI/CD dashboard client")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("login")
    p.add_argument("username")
    p.add_argument("--password", default=None)
    sub.add_parser("logout")
    sub.add_parser("whoami")

    p = sub.add_parser("projects")
    p.add_argument("--search", default=None)

    p = sub.add_parser("pipelines")
    p.add_argument("--project", type=int, default=None)
    p.add_argument("--search", default=None)

    p = sub.add_parser("builds")
    p.add_argument("--pipeline", type=int, default=None)
    p.add_argument("--search", default=None)
    p.add_argument("--watch", type=float, default=None, metavar="SECONDS")

    p = sub.add_parser("deployments")
    p.add_argument("--build", type=int, default=None)
    p.add_argument("--env", choices=["dev", "staging", "prod"], default=None)
    p.add_argument("--search", default=None)
    p.add_argument("--watch", type=float, default=None, metavar="SECONDS")

    p = sub.add_parser("logs")
    p.add_argument("kind", choices=["build", "deployment"])
    p.add_argument("id", type=int)

    for name in ("cancel", "rollback", "run"):
        p = sub.add_parser(name)
        p.add_argument("id", type=int)

    sub.add_parser("stats")

    p = sub.add_parser("events")
    p.add_argument("--limit", type=int, default=50)
    return ap


async def run(argv: Optional[Sequence[str]] = None, *, settings: Settings | None = None, transport=None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)

    def _navigate(path: str) -> None:
        print(f"session expired; sign in again ({path})", file=sys.stderr)

    async with DashboardContext.create(settings, transport=transport, navigate=_navigate) as ctx:
        ctx.notifications.subscribe(lambda n: print(f"[{n.level}] {n.message}", file=sys.stderr))
        try:
            return await _dispatch(ctx, args)
        except ActionFailed as e:
            if e.__cause__ is None:
                # Rejected before any request was sent, so nothing was published.
                print(f"[error] {e.message}", file=sys.stderr)
            return EXIT_FAILED
        except GatewayError:
            # Already reported through the notification channel.
            return EXIT_FAILED


def main(argv: Optional[List[str]] = None) -> int:
    try:
        return asyncio.run(run(argv))
    except KeyboardInterrupt:
        return EXIT_FAILED


if __name__ == "__main__":
    raise SystemExit(main())
