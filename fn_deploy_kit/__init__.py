"""
fn_deploy_kit
-------------

로컬 애플리케이션 디렉토리(app.js)를 SCF 함수로 배포하고,
앞단에 API Gateway 를 연결하는 배포 CLI 패키지.
배포 상태를 기록해 두었다가 업데이트/삭제에 사용한다.
"""

__all__ = [
    "config",
    "engine",
    "orchestrator",
]
