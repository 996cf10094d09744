import asyncio

from workforge import CallableExecutor, EngineConfig, RunSupervisor, load_definition

FINDINGS = {
    "security": "No injection risks found.",
    "style": "Two functions exceed the line limit.",
    "perf": "The new query runs inside a loop.",
}


def review(request):
    return f"{FINDINGS.get(request.agent.id, 'Looks good.')}\nSTATUS: done"


async def main():
    config = EngineConfig.model_validate({"storage": {"backend": "memory"}})
    supervisor = RunSupervisor.from_config(config, executor=CallableExecutor(review))

    run = await supervisor.arun(load_definition("workflow.yml"))
    print(run.status.value)
    print(run.context["steps"]["review"]["output"])

    await supervisor.shutdown()


asyncio.run(main())
