RESOURCE_PREFIX_LIMIT = 42
PIPELINE_PREFIX_LIMIT = 23
PIPELINE_PART_LIMIT = 7
LOAD_BALANCER_NAME_LIMIT = 32
TARGET_GROUP_NAME_LIMIT = 32

DEFAULT_ROOT_DIR = "."
DEFAULT_CPU = 256
DEFAULT_MEMORY_SIZE = 512
DEFAULT_DESIRED_COUNT = 1
DEFAULT_PORT = 3000
DEFAULT_HEALTH_CHECK_PATH = "/"
DEFAULT_DOCKERFILE = "Dockerfile"
DEFAULT_BRANCH = "main"

BUILD_SYSTEM_DOCKER = "Docker"
BUILD_SYSTEM_NIXPACKS = "Nixpacks"
NIXPACKS_DOCKERFILE = ".nixpacks/Dockerfile"

# rolling deployment
MIN_HEALTHY_PERCENT = 50
MAX_HEALTHY_PERCENT = 200

# deploy stage polling
DEPLOY_POLL_ATTEMPTS = 30
DEPLOY_POLL_INTERVAL_SECONDS = 30
DEPLOY_STABLE_WAIT_SECONDS = 900

BUILD_TIMEOUT_MINUTES = 20
DEPLOY_TIMEOUT_MINUTES = 45

# build stage artifact files
IMAGE_URI_FILE = "imageUri.txt"
IMAGE_TAG_FILE = "imageTag.txt"
IMAGE_DIGEST_FILE = "imageDigest.txt"

PIPELINE_EVENT_SOURCE = "aws.codepipeline"
PIPELINE_EVENT_DETAIL_TYPE = "CodePipeline Pipeline Execution State Change"
PIPELINE_EVENT_STATES = [
    "STARTED",
    "SUCCEEDED",
    "RESUMED",
    "FAILED",
    "CANCELED",
    "SUPERSEDED",
]
