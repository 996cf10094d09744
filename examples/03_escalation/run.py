import asyncio

from workforge import CallableExecutor, EngineConfig, ExecutorFailure, RunSupervisor, load_definition

attempts = {"deploy": 0}


def flaky_deploy(request):
    if request.step_id == "deploy" and request.agent.id == "deployer":
        attempts["deploy"] += 1
        raise ExecutorFailure(f"attempt {attempts['deploy']}: registry unavailable")
    return f"{request.agent.id} finished {request.step_id}"


async def main():
    config = EngineConfig.model_validate({"storage": {"backend": "memory"}})
    supervisor = RunSupervisor.from_config(config, executor=CallableExecutor(flaky_deploy))

    run = await supervisor.arun(load_definition("workflow.yml"))
    deploy = run.find_step("deploy")
    print(f"{run.status.value}: deploy failed {attempts['deploy']} times, resolved by {deploy.escalation.agent}")

    await supervisor.shutdown()


asyncio.run(main())
