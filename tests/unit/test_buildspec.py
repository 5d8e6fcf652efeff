import json
import os
import shutil
import subprocess
import tempfile
import unittest

from webservice_infrastructure.buildspec import (BuildSpecDocument,
                                                 deploy_spec,
                                                 image_build_spec,
                                                 nixpacks_command)
from webservice_infrastructure.config import resolve_descriptor


def descriptor(**overrides):
    data = {
        "env": {"account": "123456789012", "region": "us-east-1"},
        "application": "shop",
        "service": "api",
        "environment": "prod",
        "sourceProps": {"owner": "acme", "repo": "shop-api"},
        "accessTokenSecretArn": "arn:aws:secretsmanager:us-east-1:123456789012:secret:github-token",
    }
    data.update(overrides)
    return resolve_descriptor(data)


class TestBuildSpecDocument(unittest.TestCase):

    def test_render_skips_empty_phases(self):
        spec = BuildSpecDocument(build=["make"]).render()
        self.assertEqual(spec["version"], "0.2")
        self.assertEqual(spec["env"], {"shell": "bash"})
        self.assertEqual(spec["phases"], {"build": {"commands": ["make"]}})
        self.assertNotIn("artifacts", spec)

    def test_commands_are_in_phase_order(self):
        document = BuildSpecDocument(post_build=["c"], pre_build=["a"], build=["b"])
        self.assertEqual(document.commands(), ["a", "b", "c"])


class TestImageBuildSpec(unittest.TestCase):

    def test_docker_build(self):
        spec = image_build_spec(descriptor()).render()
        phases = spec["phases"]

        self.assertIn("export IMAGE_TAG", " ".join(phases["pre_build"]["commands"]))
        self.assertIn("docker login", " ".join(phases["pre_build"]["commands"]))
        self.assertEqual(phases["build"]["commands"], [
            "docker build -t $ECR_REPO:$IMAGE_TAG -f Dockerfile .",
            "docker push $ECR_REPO:$IMAGE_TAG",
        ])
        post_build = phases["post_build"]["commands"]
        self.assertIn("export IMAGE_URI=$ECR_REPO@$IMAGE_DIGEST", post_build)
        self.assertEqual(spec["artifacts"]["files"], ["imageUri.txt", "imageTag.txt", "imageDigest.txt"])

    def test_tag_includes_timestamp_and_build_number(self):
        commands = image_build_spec(descriptor()).commands()
        tag = next(c for c in commands if c.startswith("export IMAGE_TAG="))
        self.assertIn("date -u +%Y%m%d%H%M%S", tag)
        self.assertIn("${CODEBUILD_BUILD_NUMBER}", tag)

    def test_empty_digest_fails_the_build(self):
        post_build = image_build_spec(descriptor()).post_build
        digest_index = next(i for i, c in enumerate(post_build) if c.startswith("export IMAGE_DIGEST="))
        self.assertIn('-z "$IMAGE_DIGEST"', post_build[digest_index + 1])
        self.assertIn("exit 1", post_build[digest_index + 1])

    def test_root_dir_is_sanitized_and_quoted(self):
        document = image_build_spec(descriptor(rootDir="/apps//web app;/"))
        self.assertEqual(document.pre_build[0], "cd 'apps/web app'")
        self.assertEqual(document.artifact_files[0], "apps/web app/imageUri.txt")

    def test_dockerfile_path_is_quoted(self):
        document = image_build_spec(descriptor(serviceProps={"dockerFile": "docker/Dockerfile; echo pwned"}))
        self.assertEqual(document.build[0],
                         "docker build -t $ECR_REPO:$IMAGE_TAG -f 'docker/Dockerfile; echo pwned' .")

    def test_nixpacks_synthesizes_dockerfile_first(self):
        document = image_build_spec(descriptor(buildProps={
            "buildSystem": "Nixpacks",
            "installcmd": "npm ci",
            "startcmd": "node server.js",
        }))
        self.assertIn("nixpacks.com/install.sh", document.pre_build[0])
        self.assertEqual(document.pre_build[1],
                         "nixpacks build . --out . --install-cmd 'npm ci' --start-cmd 'node server.js'")
        self.assertEqual(document.build[0], "docker build -t $ECR_REPO:$IMAGE_TAG -f .nixpacks/Dockerfile .")

    def test_nixpacks_command_without_overrides(self):
        self.assertEqual(nixpacks_command(), "nixpacks build . --out .")


class TestDeploySpec(unittest.TestCase):

    def test_reads_image_uri_from_build_artifact(self):
        document = deploy_spec(descriptor(rootDir="web"))
        self.assertIn("IMAGE_URI=$(cat web/imageUri.txt)", document.pre_build)
        self.assertEqual(deploy_spec(descriptor()).pre_build[1], "IMAGE_URI=$(cat imageUri.txt)")

    def test_refuses_images_without_digest(self):
        guard = deploy_spec(descriptor()).pre_build[2]
        self.assertIn("*@sha256:*", guard)
        self.assertIn("exit 1", guard)

    def test_never_references_image_tag(self):
        for command in deploy_spec(descriptor()).commands():
            self.assertNotIn("IMAGE_TAG", command)
            self.assertNotIn("imageTag.txt", command)

    def test_patches_live_task_definition(self):
        pre_build = deploy_spec(descriptor()).pre_build
        self.assertTrue(any("describe-task-definition --task-definition $ECS_TASKDEF" in c for c in pre_build))
        patch = pre_build[-1]
        self.assertIn(".containerDefinitions[0].image = $IMAGE_URI", patch)
        self.assertIn("del(.taskDefinitionArn, .revision", patch)
        self.assertTrue(patch.endswith("> taskdef.json"))

    def test_rolling_update_with_circuit_breaker(self):
        build = deploy_spec(descriptor()).build
        update = next(c for c in build if c.startswith("aws ecs update-service"))
        self.assertIn("--task-definition $NEW_TASK_DEF_ARN", update)
        self.assertIn("maximumPercent=200,minimumHealthyPercent=50", update)
        self.assertIn("deploymentCircuitBreaker={enable=true,rollback=true}", update)

    def test_bounded_polling_and_soft_timeout(self):
        build = deploy_spec(descriptor()).build
        poll = next(c for c in build if c.startswith("for i in"))
        self.assertIn("$(seq 1 30)", poll)
        self.assertIn('"$ROLLOUT_STATE" = "FAILED" ]; then echo "Deployment failed"; exit 1', poll)
        self.assertIn("sleep 30", poll)

        wait = next(c for c in build if "services-stable" in c)
        self.assertTrue(wait.startswith("timeout 900 "))
        self.assertIn("|| echo", wait)


OLD_TASK_DEF = "arn:aws:ecs:us-east-1:123456789012:task-definition/shop-api-prod:1"
NEW_TASK_DEF = "arn:aws:ecs:us-east-1:123456789012:task-definition/shop-api-prod:2"


@unittest.skipUnless(shutil.which("bash") and shutil.which("jq"), "requires bash and jq")
class TestDeploymentPolling(unittest.TestCase):
    """Runs the rendered poll loop against a stubbed ``aws`` command."""

    def setUp(self):
        self.stub_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self.stub_dir.cleanup)
        stub = os.path.join(self.stub_dir.name, "aws")
        with open(stub, "w") as f:
            f.write('#!/bin/sh\nprintf "%s" "$STUB_SERVICE_JSON"\n')
        os.chmod(stub, 0o755)
        self.poll = next(c for c in deploy_spec(descriptor()).build if c.startswith("for i in"))

    def run_poll(self, deployments, running=1, desired=1):
        service = {"runningCount": running, "desiredCount": desired, "deployments": deployments}
        env = dict(os.environ)
        env.update({
            "PATH": self.stub_dir.name + os.pathsep + os.environ.get("PATH", ""),
            "STUB_SERVICE_JSON": json.dumps(service),
            "NEW_TASK_DEF_ARN": NEW_TASK_DEF,
            "ECS_CLUSTER": "cluster",
            "ECS_SERVICE": "service",
            "AWS_DEFAULT_REGION": "us-east-1",
        })
        return subprocess.run(["bash", "-c", self.poll], env=env, capture_output=True, text=True, timeout=60)

    def test_failed_rollout_of_new_revision_exits_nonzero(self):
        result = self.run_poll([
            {"status": "PRIMARY", "taskDefinition": NEW_TASK_DEF, "rolloutState": "FAILED"},
            {"status": "ACTIVE", "taskDefinition": OLD_TASK_DEF, "rolloutState": "COMPLETED"},
        ])
        self.assertEqual(result.returncode, 1)
        self.assertIn("Deployment failed", result.stdout)

    def test_rollback_to_previous_revision_exits_nonzero(self):
        # the breaker made the old revision PRIMARY again and it completed
        result = self.run_poll([
            {"status": "PRIMARY", "taskDefinition": OLD_TASK_DEF, "rolloutState": "COMPLETED"},
            {"status": "ACTIVE", "taskDefinition": NEW_TASK_DEF, "rolloutState": "IN_PROGRESS"},
        ])
        self.assertEqual(result.returncode, 1)
        self.assertIn("rolled back", result.stdout)
        self.assertNotIn("Deployment successful", result.stdout)

    def test_completed_rollout_of_new_revision_succeeds(self):
        result = self.run_poll([
            {"status": "PRIMARY", "taskDefinition": NEW_TASK_DEF, "rolloutState": "COMPLETED"},
        ])
        self.assertEqual(result.returncode, 0)
        self.assertIn("Deployment successful", result.stdout)


if __name__ == '__main__':
    unittest.main()
