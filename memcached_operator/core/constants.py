"""Constants shared by the memcached operator."""

# Database resource
GROUP = "kubedb.com"
VERSION = "v1alpha1"
API_VERSION = f"{GROUP}/{VERSION}"
KIND = "Memcached"
PLURAL = "memcacheds"
RESOURCE_SINGULAR = "memcached"

# Identity labels carried by every dependent object
LABEL_DATABASE_NAME = f"{GROUP}/name"
LABEL_DATABASE_KIND = f"{GROUP}/kind"

# Uid of the instance that created a data object; a different uid marks it dormant
ANNOTATION_INSTANCE_UID = f"{GROUP}/instance-uid"

# Finalizer guarding deletion until the termination policy has run
FINALIZER = GROUP

# Field manager reported on writes
FIELD_MANAGER = "memcached-operator"

# AppBinding
APPBINDING_GROUP = "appcatalog.appscode.com"
APPBINDING_VERSION = "v1alpha1"
APPBINDING_KIND = "AppBinding"
APPBINDING_PLURAL = "appbindings"
APPBINDING_TYPE = f"{GROUP}/{RESOURCE_SINGULAR}"

# Network
MEMCACHED_PORT = 11211
PORT_NAME = "db"
GOVERNING_SERVICE_SUFFIX = "-pods"

# Volumes. CONFIG_SOURCE_VOLUME is read by config-reload sidecars and test
# probes; do not rename.
CONFIG_SOURCE_VOLUME = "custom-config"
CONFIG_SOURCE_MOUNT_PATH = "/usr/config/"
DATA_VOLUME = "data"
DATA_MOUNT_PATH = "/data"

# Auth secret
AUTH_SECRET_SUFFIX = "-auth"
AUTH_USERNAME = "memcached"
ENV_USERNAME = "MEMCACHED_USERNAME"
ENV_PASSWORD = "MEMCACHED_PASSWORD"
RESERVED_ENV_VARS = frozenset({ENV_USERNAME, ENV_PASSWORD})

# Termination policies
TERMINATION_DO_NOT_TERMINATE = "DoNotTerminate"
TERMINATION_HALT = "Halt"
TERMINATION_DELETE = "Delete"
TERMINATION_WIPE_OUT = "WipeOut"

# Condition types
COND_READY = "Ready"
COND_HALTED = "Halted"
COND_DELETION_BLOCKED = "DeletionBlocked"
COND_CLEANUP = "CleanupComplete"

# Condition reasons
REASON_VALIDATION_FAILED = "ValidationFailed"
REASON_PROVISIONING = "Provisioning"
REASON_RESUMING = "ResumingFromDormant"
REASON_READY = "WorkloadReady"
REASON_HALTED = "HaltedBySpec"
REASON_HALTING = "Halting"
REASON_POLICY_DO_NOT_TERMINATE = "TerminationPolicyDoNotTerminate"
REASON_PARTIAL_CLEANUP = "PartialCleanup"
