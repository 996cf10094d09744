import asyncio

from workforge import RunStatus, RunSupervisor, load_definition, load_engine_config


async def main():
    supervisor = RunSupervisor.from_config(load_engine_config())
    definition = load_definition("workflow.yml")

    run = await supervisor.arun(definition, task_id="FEAT-42")
    print(f"{run.id}: {run.status.value} at {run.current_step}")

    if run.status == RunStatus.BLOCKED:
        await supervisor.resume_run(run.id, context={"approved": True})
        run = await supervisor.wait_for(run.id)
        print(f"{run.id}: {run.status.value}")

    await supervisor.shutdown()


asyncio.run(main())
