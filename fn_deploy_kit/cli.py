import json
import os
import signal
import sys
import threading
from typing import Any, Dict, Optional

import click

from .config import CONFIG_FILE_DEFAULT, DeploySettings, load_config_file, load_env_files
from .errors import CancelledError, DeployKitError, DeploymentError, TeardownErrorList
from .logging_utils import get_logger, setup_logging
from .orchestrator import (
    DEFAULT_INSTANCE,
    deploy as deploy_app,
    plan_all,
    summarize_deploy,
    summarize_teardown,
    teardown,
)
from .providers import ProviderRegistry, default_registry
from .retry import call_with_retry
from .state_store import StateStore, open_state_store, validate_deployment_id


logger = get_logger(__name__)


@click.group()
@click.option(
    "-C",
    "--chdir",
    "chdir",
    type=click.Path(file_okay=False, dir_okay=True, exists=True),
    default=".",
    help="작업 디렉토리 (기본: 현재 디렉토리)",
)
@click.option(
    "-v",
    "--verbose",
    count=True,
    help="로그 레벨을 DEBUG로 올립니다.",
)
@click.option("-q", "--quiet", is_flag=True, help="경고 이상의 로그만 출력합니다.")
@click.option(
    "--instance",
    default=DEFAULT_INSTANCE,
    show_default=True,
    help="배포 이름을 기억해 두는 인스턴스 키 (같은 디렉토리에서 여러 배포를 구분할 때 사용)",
)
@click.pass_context
def main(ctx: click.Context, chdir: str, verbose: int, quiet: bool, instance: str) -> None:
    """SCF 함수 + API Gateway 배포용 CLI"""
    setup_logging(verbose, quiet)
    ctx.ensure_object(dict)
    ctx.obj["chdir"] = os.path.abspath(chdir)
    ctx.obj["instance"] = instance


def _settings_from_ctx(ctx: click.Context) -> DeploySettings:
    if "settings" not in ctx.obj:
        load_env_files(ctx.obj["chdir"])
        ctx.obj["settings"] = DeploySettings.from_env()
        logger.debug("Settings loaded: %s", ctx.obj["settings"])
    return ctx.obj["settings"]


def _store_from_ctx(ctx: click.Context) -> StateStore:
    if "store" not in ctx.obj:
        ctx.obj["store"] = open_state_store(_settings_from_ctx(ctx), base_dir=ctx.obj["chdir"])
    return ctx.obj["store"]


def _registry_from_ctx(ctx: click.Context) -> ProviderRegistry:
    if "registry" not in ctx.obj:
        settings = _settings_from_ctx(ctx)
        ctx.obj["registry"] = default_registry(settings.tccli_path, settings.command_timeout)
    return ctx.obj["registry"]


def _load_inputs(ctx: click.Context, config_file: Optional[str]) -> Dict[str, Any]:
    path = config_file or os.path.join(ctx.obj["chdir"], CONFIG_FILE_DEFAULT)
    if config_file and not os.path.exists(path):
        raise click.BadParameter(f"설정 파일이 없습니다: {path}", param_hint="--config")
    raw = load_config_file(path)
    logger.debug("배포 입력 로드: %s -> %s", path, raw)
    return raw


def _prepare(ctx: click.Context, config_file: Optional[str]) -> tuple:
    try:
        settings = _settings_from_ctx(ctx)
        raw = _load_inputs(ctx, config_file)
        store = _store_from_ctx(ctx)
        registry = _registry_from_ctx(ctx)
    except click.BadParameter:
        raise
    except Exception as e:  # noqa: BLE001
        click.echo(f"[ERROR] 설정 로드 실패: {e}", err=True)
        sys.exit(1)
    return settings, raw, store, registry


def _install_cancel_handler(cancel_event: threading.Event):  # noqa: ANN202
    """
    첫 Ctrl-C 는 cancel_event 만 set 하여 진행 중인 리소스 작업이 끝난 뒤 멈추게 하고,
    두 번째 Ctrl-C 는 KeyboardInterrupt 로 즉시 종료한다.
    """

    def _handler(signum, frame) -> None:  # noqa: ANN001
        if cancel_event.is_set():
            raise KeyboardInterrupt
        click.echo(
            "\n중단 요청을 받았습니다. 진행 중인 리소스 작업이 끝나면 멈춥니다. (다시 누르면 즉시 종료)",
            err=True,
        )
        cancel_event.set()

    if threading.current_thread() is not threading.main_thread():
        return None
    return signal.signal(signal.SIGINT, _handler)


config_option = click.option(
    "-f",
    "--config",
    "config_file",
    type=click.Path(dir_okay=False),
    default=None,
    help=f"배포 입력 파일 (기본: <chdir>/{CONFIG_FILE_DEFAULT})",
)


@main.command()
@config_option
@click.option("--no-strict", is_flag=True, help="알 수 없는 설정 키를 무시합니다.")
@click.pass_context
def plan(ctx: click.Context, config_file: Optional[str], no_strict: bool) -> None:
    """적용될 리소스와 순서를 출력 (클라우드 호출 없음)"""
    settings, raw, store, registry = _prepare(ctx, config_file)
    try:
        report = plan_all(
            raw,
            store=store,
            registry=registry,
            instance=ctx.obj["instance"],
            strict=settings.strict and not no_strict,
            cwd=ctx.obj["chdir"],
        )
    except DeployKitError as e:
        click.echo(f"[ERROR] 계획 실패: {e}", err=True)
        sys.exit(1)
    click.echo(report)


@main.command(name="deploy")
@config_option
@click.option("--retries", type=int, default=None, help="일시적 오류 시 재시도 횟수 (기본: FNDEPLOY_RETRIES)")
@click.option("--no-strict", is_flag=True, help="알 수 없는 설정 키를 무시합니다.")
@click.option("--json", "as_json", is_flag=True, help="출력을 JSON 으로 표시합니다.")
@click.pass_context
def deploy(
    ctx: click.Context,
    config_file: Optional[str],
    retries: Optional[int],
    no_strict: bool,
    as_json: bool,
) -> None:
    """함수와 API Gateway 를 생성/업데이트하여 배포"""
    settings, raw, store, registry = _prepare(ctx, config_file)
    cancel_event = threading.Event()
    attempts = 1 + (settings.retries if retries is None else max(retries, 0))

    def _run():
        return deploy_app(
            raw,
            store=store,
            registry=registry,
            instance=ctx.obj["instance"],
            cancel_event=cancel_event,
            strict=settings.strict and not no_strict,
            cwd=ctx.obj["chdir"],
        )

    previous_handler = _install_cancel_handler(cancel_event)
    try:
        result = call_with_retry(_run, attempts=attempts)
    except (CancelledError, KeyboardInterrupt):
        click.echo("[ERROR] 사용자에 의해 중단되었습니다. 기록된 상태는 유지됩니다.", err=True)
        sys.exit(130)
    except DeploymentError as e:
        click.echo(f"[ERROR] 배포 실패: {e.failed_resource}: {e.cause}", err=True)
        for name, outputs in e.succeeded.items():
            click.echo(f"  적용 완료(유지됨): {name} {json.dumps(outputs, ensure_ascii=False)}", err=True)
        if e.pending:
            click.echo(f"  적용되지 않음: {', '.join(e.pending)}", err=True)
        click.echo("  같은 명령을 다시 실행하면 이어서 진행합니다.", err=True)
        sys.exit(1)
    except DeployKitError as e:
        click.echo(f"[ERROR] 배포 실패: {e}", err=True)
        sys.exit(1)
    finally:
        if previous_handler is not None:
            signal.signal(signal.SIGINT, previous_handler)

    if as_json:
        click.echo(json.dumps(result.outputs, ensure_ascii=False, indent=2))
    else:
        click.echo(summarize_deploy(result))


@main.command()
@config_option
@click.option("--retries", type=int, default=None, help="일시적 오류 시 재시도 횟수 (기본: FNDEPLOY_RETRIES)")
@click.pass_context
def remove(ctx: click.Context, config_file: Optional[str], retries: Optional[int]) -> None:
    """API Gateway 와 함수를 삭제 (가능한 모든 리소스를 시도)"""
    settings, raw, store, registry = _prepare(ctx, config_file)
    attempts = 1 + (settings.retries if retries is None else max(retries, 0))

    def _run():
        return teardown(
            raw,
            store=store,
            registry=registry,
            instance=ctx.obj["instance"],
            strict=False,
        )

    try:
        result = call_with_retry(_run, attempts=attempts)
    except TeardownErrorList as e:
        click.echo(f"[ERROR] 일부 리소스 삭제 실패: {e.deployment_id}", err=True)
        for name in e.removed:
            click.echo(f"  삭제됨: {name}", err=True)
        for name, err in e.failures.items():
            click.echo(f"  실패: {name}: {err}", err=True)
        sys.exit(1)
    except DeployKitError as e:
        click.echo(f"[ERROR] 삭제 실패: {e}", err=True)
        sys.exit(1)

    click.echo(summarize_teardown(result))


@main.command()
@config_option
@click.pass_context
def state(ctx: click.Context, config_file: Optional[str]) -> None:
    """기록된 배포 상태를 JSON 으로 출력"""
    settings, raw, store, registry = _prepare(ctx, config_file)
    previous = store.get_alias(ctx.obj["instance"])
    name = raw.get("name") or raw.get("functionName") or previous
    if not name:
        click.echo("기록된 배포가 없습니다.")
        return
    try:
        records = store.get(validate_deployment_id(str(name)))
    except DeployKitError as e:
        click.echo(f"[ERROR] 상태 조회 실패: {e}", err=True)
        sys.exit(1)
    click.echo(json.dumps({"deployment": name, "resources": records}, ensure_ascii=False, indent=2))


@main.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """
    현재 디렉토리에 fndeploy.yml / .env.example 템플릿을 복사하는 초기화.
    """
    from importlib import resources

    base_dir: str = ctx.obj["chdir"]

    for name, target_name in (("fndeploy.yml.example", CONFIG_FILE_DEFAULT), ("env.example", ".env.example")):
        target = os.path.join(base_dir, target_name)
        if os.path.exists(target):
            click.echo(f"{target_name} 이(가) 이미 존재하여 건너뜀")
            continue
        try:
            with resources.files("fn_deploy_kit.examples").joinpath(name).open("r", encoding="utf-8") as src, open(
                target, "w", encoding="utf-8"
            ) as dst:
                dst.write(src.read())
            click.echo(f"{target_name} 템플릿을 생성했습니다.")
        except FileNotFoundError:
            click.echo(f"템플릿 {name} 을(를) 패키지에서 찾을 수 없습니다.", err=True)
