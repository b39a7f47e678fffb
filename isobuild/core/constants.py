"""
Constants
Centralised storage for mount points, file naming, statuses and exit codes.
"""
# Container mount points
PROJECT_MOUNT = "/workspace"
ARTIFACT_MOUNT = "/tmp/build-artifacts"
CONTAINER_LABEL = "isobuild.role"
CONTAINER_LABEL_VALUE = "build-step"

# Extra PATH entries exported before every command (cargo lives outside the default PATH)
EXEC_PATH = "$PATH:/usr/local/cargo/bin:/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"

# Published file kinds: <prefix>_result_<suite>_<pid>_<random>
RESULT_KIND = "result"
OUTPUT_KIND = "output"

TEST_STATUSES = ("passed", "failed", "running")

# Memory
MB = 1024 * 1024
LOW_MEMORY_WARNING_MB = 200
FALLBACK_MEMORY_MB = 4096
FALLBACK_CPU_CORES = 4

# Process exit codes
EXIT_SUCCESS = 0
EXIT_STEPS_FAILED = 1
EXIT_FATAL = 2
EXIT_INTERRUPTED = 130
