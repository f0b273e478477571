import typing as t

from pydantic import Field, StringConstraints

from configomatic import Configuration, Section, LoggingConfiguration


#: Type for a non-empty string
NonEmptyString = t.Annotated[str, StringConstraints(min_length=1)]

#: Type for a positive number of seconds
Seconds = t.Annotated[float, Field(gt=0)]


class LabelConfig(Section):
    """
    Model for the workload label configuration section.
    """
    #: The label containing the endpoint name (required for exposure)
    name: NonEmptyString = "dovetail.name"
    #: The label containing the port that the workload listens on (required for exposure)
    port: NonEmptyString = "dovetail.port"
    #: The label containing the name of the preferred network (optional)
    network: NonEmptyString = "dovetail.network"


class DockerConfig(Section):
    """
    Model for the Docker configuration section.
    """
    #: The URL of the Docker daemon
    #: If not given, the standard DOCKER_* environment variables are used
    base_url: t.Optional[str] = None
    #: The timeout for Docker API calls
    timeout: t.Annotated[int, Field(gt=0)] = 60


class TailscaleConfig(Section):
    """
    Model for the Tailscale configuration section.
    """
    #: The tailscaled executable to use for each endpoint
    tailscaled_executable: NonEmptyString = "tailscaled"
    #: The tailscale CLI executable
    tailscale_executable: NonEmptyString = "tailscale"
    #: The time to allow for a node to start and join the tailnet
    #: Joining for the first time may need to wait for registration
    startup_timeout: Seconds = 60
    #: The time to wait for tailscaled to exit before it is killed
    close_timeout: Seconds = 10
    #: The interval at which each node reloads its TLS certificate
    #: tailscaled renews certificates well before they expire, so a day is ample
    cert_refresh_interval: Seconds = 86400


class ServerConfig(Section):
    """
    Model for the per-endpoint HTTPS server configuration section.
    """
    #: The port that each endpoint listens on
    port: t.Annotated[int, Field(gt=0, lt=65536)] = 443
    #: The timeout for reading from the upstream workload
    read_timeout: Seconds = 30
    #: The timeout for writing to the upstream workload
    write_timeout: Seconds = 30
    #: The time after which idle client connections are closed
    idle_timeout: Seconds = 120
    #: The grace period for in-flight requests when an endpoint shuts down
    shutdown_grace_period: Seconds = 10
    #: The maximum time to wait for an endpoint's server to stop
    stop_timeout: Seconds = 15


class DovetailConfig(
    Configuration,
    default_path="/etc/dovetail/config.yaml",
    path_env_var="DOVETAIL_CONFIG",
    env_prefix="DOVETAIL",
):
    """
    Configuration model for dovetail.
    """
    #: The logging configuration
    logging: LoggingConfiguration = Field(default_factory=LoggingConfiguration)

    #: The key used to join endpoints to the mesh network
    auth_key: NonEmptyString
    #: The directory under which per-endpoint state is kept
    #: Endpoint identities survive restarts as long as this is persistent
    state_dir: NonEmptyString = "/var/lib/dovetail"

    #: The name of the workload directory type to use
    directory_type: NonEmptyString = "docker"
    #: The name of the mesh provider type to use
    mesh_type: NonEmptyString = "tailscale"

    #: The workload label configuration
    labels: LabelConfig = Field(default_factory=LabelConfig)
    #: The Docker configuration
    docker: DockerConfig = Field(default_factory=DockerConfig)
    #: The Tailscale configuration
    tailscale: TailscaleConfig = Field(default_factory=TailscaleConfig)
    #: The endpoint server configuration
    server: ServerConfig = Field(default_factory=ServerConfig)
