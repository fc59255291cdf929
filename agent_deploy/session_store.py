from cdktf import TerraformResource, TerraformResourceLifecycle
from constructs import Construct

RESOURCE_TYPE = "google_vertex_ai_reasoning_engine"


class SessionStore(Construct):
    """
    Vertex AI Reasoning Engine holding the agent's sessions and memory.

    The engine keeps durable state, so it is created with ``prevent_destroy``.
    Passing ``allow_destroy=True`` is the only way to let Terraform remove it.
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        *,
        project: str,
        region: str,
        display_name: str,
        description: str = "",
        allow_destroy: bool = False,
    ) -> None:
        super().__init__(scope, construct_id)

        self.engine = TerraformResource(
            self,
            "ReasoningEngine",
            terraform_resource_type=RESOURCE_TYPE,
            lifecycle=TerraformResourceLifecycle(prevent_destroy=not allow_destroy),
        )
        self.engine.add_override("project", project)
        self.engine.add_override("region", region)
        self.engine.add_override("display_name", display_name)
        if description:
            self.engine.add_override("description", description)

    @property
    def resource_name(self) -> str:
        """Full resource name, ``projects/.../reasoningEngines/<id>``."""
        return self.engine.get_string_attribute("name")
