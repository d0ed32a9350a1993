"""CI environment detection."""

import os
from typing import Mapping, Optional

from pydantic import BaseModel


class CIContext(BaseModel):
    is_ci: bool
    branch: Optional[str] = None


def detect_ci_context(env: Optional[Mapping[str, str]] = None) -> CIContext:
    """
    Detects whether we run in CI and the branch being built.

    Outside CI the branch comes from BRANCH_NAME, if set.
    """
    env = os.environ if env is None else env

    if env.get("GITHUB_ACTIONS"):
        return CIContext(is_ci=True, branch=env.get("GITHUB_REF_NAME") or env.get("GITHUB_HEAD_REF"))

    if env.get("GITLAB_CI"):
        return CIContext(is_ci=True, branch=env.get("CI_COMMIT_REF_NAME"))

    if env.get("CIRCLECI"):
        return CIContext(is_ci=True, branch=env.get("CIRCLE_BRANCH"))

    if env.get("JENKINS_URL"):
        return CIContext(is_ci=True, branch=env.get("GIT_BRANCH") or env.get("BRANCH_NAME"))

    if env.get("TF_BUILD"):
        branch = env.get("BUILD_SOURCEBRANCH")
        if branch and branch.startswith("refs/heads/"):
            branch = branch[len("refs/heads/"):]
        return CIContext(is_ci=True, branch=branch)

    if env.get("CF_BUILD_URL"):
        return CIContext(is_ci=True, branch=env.get("CF_BRANCH"))

    if env.get("CI", "false").lower() not in ("", "false", "0"):
        return CIContext(is_ci=True, branch=env.get("BRANCH_NAME") or env.get("GIT_BRANCH"))

    return CIContext(is_ci=False, branch=env.get("BRANCH_NAME"))
