"""Tests for the YAML pipeline definition loader."""

import textwrap

import pytest
import yaml

from convoy.pipeline.domain.enums import GatePolicy, ProbeType, TargetMode
from convoy.pipeline.domain.exceptions import (
    CycleDetected,
    DuplicateStage,
    PipelineDefinitionError,
    UnknownDependency,
)
from convoy.pipeline.infrastructure.definition_loader import load_definition, parse_definition

SERVICE_CI = """
name: service-ci
parallel_limit: 2
fail_fast: true
stages:
  - id: build
    actions:
      - name: image
        run: docker build -t registry.local/app:${run.id} .
        secrets: [REGISTRY_TOKEN]
        outputs:
          image_ref: {value: "registry.local/app:${run.id}"}
  - id: scan
    needs: build
    gate: advisory
    actions:
      - name: trivy
        run: ["trivy", "image", "--output", "trivy.txt", "${artifacts.image_ref}"]
        outputs:
          vulnerability_report: {path: trivy.txt}
  - id: test
    needs: [scan]
    timeout: 600
    target:
      mode: detached
      start: docker run -d -p 8080:8080 ${artifacts.image_ref}
      stop: docker rm -f ${target.id}
      probe: {type: http, url: "http://127.0.0.1:8080/health", timeout: 60, interval: 1}
    actions:
      - name: pytest
        run: pytest tests/ --base-url http://127.0.0.1:8080
"""


@pytest.fixture
def pipeline_file(tmp_path):
    """Write the service-ci definition to disk."""
    path = tmp_path / "pipeline.yaml"
    path.write_text(SERVICE_CI)
    return path


def parse(text):
    return parse_definition(yaml.safe_load(textwrap.dedent(text)))


class TestLoadDefinition:
    """Loading valid definitions."""

    def test_loads_full_definition(self, pipeline_file):
        """Test conversion of every section into domain definitions."""
        definition = load_definition(pipeline_file)

        assert definition.name == "service-ci"
        assert definition.parallel_limit == 2
        assert definition.fail_fast is True
        assert definition.stage_ids == ["build", "scan", "test"]

        build = definition.stage("build")
        assert build.actions[0].run == ("docker", "build", "-t", "registry.local/app:${run.id}", ".")
        assert build.actions[0].secrets == ("REGISTRY_TOKEN",)
        assert build.actions[0].outputs["image_ref"].source == "value"

        scan = definition.stage("scan")
        assert scan.needs == ("build",)
        assert scan.gate == GatePolicy.ADVISORY
        assert scan.actions[0].required_artifacts() == ["image_ref"]
        assert scan.actions[0].outputs["vulnerability_report"].path == "trivy.txt"

        test = definition.stage("test")
        assert test.timeout == 600
        assert test.target.mode == TargetMode.DETACHED
        assert test.target.stop == ("docker", "rm", "-f", "${target.id}")
        assert test.target.probe.type == ProbeType.HTTP
        assert test.target.probe.url == "http://127.0.0.1:8080/health"
        assert definition.secret_names() == ["REGISTRY_TOKEN"]

    def test_mapping_form_of_stages(self):
        """Test that stages may be given as a mapping keyed by id."""
        definition = parse(
            """
            stages:
              build:
                actions: [{name: make, run: make}]
              test:
                needs: build
                actions: [{name: check, run: make check}]
            """
        )

        assert definition.name == "pipeline"
        assert definition.stage_ids == ["build", "test"]
        assert definition.stage("test").needs == ("build",)

    def test_duplicate_needs_collapsed(self):
        """Test that repeated needs entries are deduplicated in order."""
        definition = parse(
            """
            stages:
              - id: a
                actions: [{name: x, run: "true"}]
              - id: b
                needs: [a, a]
                actions: [{name: x, run: "true"}]
            """
        )

        assert definition.stage("b").needs == ("a",)


class TestInvalidDefinitions:
    """Definition-time errors."""

    def test_missing_file(self, tmp_path):
        """Test that an unreadable file is a definition error."""
        with pytest.raises(PipelineDefinitionError, match="Cannot read"):
            load_definition(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path):
        """Test that malformed YAML is a definition error."""
        path = tmp_path / "broken.yaml"
        path.write_text("stages: [unclosed")

        with pytest.raises(PipelineDefinitionError, match="invalid YAML"):
            load_definition(path)

    def test_not_a_mapping(self):
        """Test that a top-level list is rejected."""
        with pytest.raises(PipelineDefinitionError, match="must be a mapping"):
            parse_definition(["a", "b"])

    def test_unknown_field(self):
        """Test that typos in keys are rejected."""
        with pytest.raises(PipelineDefinitionError, match="needz"):
            parse(
                """
                stages:
                  - id: a
                    needz: [b]
                    actions: [{name: x, run: "true"}]
                """
            )

    def test_stage_without_actions(self):
        """Test that a stage needs at least one action."""
        with pytest.raises(PipelineDefinitionError):
            parse("stages: [{id: a, actions: []}]")

    def test_secret_interpolation_rejected(self):
        """Test that ${secrets.*} in arguments is refused."""
        with pytest.raises(PipelineDefinitionError, match="secrets.TOKEN"):
            parse(
                """
                stages:
                  - id: a
                    actions: [{name: login, run: "docker login -p ${secrets.TOKEN}"}]
                """
            )

    def test_unknown_namespace_rejected(self):
        """Test that unknown placeholder namespaces are refused."""
        with pytest.raises(PipelineDefinitionError, match="unknown placeholder namespace 'env'"):
            parse(
                """
                stages:
                  - id: a
                    actions: [{name: x, run: "echo ${env.HOME}"}]
                """
            )

    def test_target_placeholder_needs_target(self):
        """Test that ${target.id} is only usable in stages with a target."""
        with pytest.raises(PipelineDefinitionError, match="target.id"):
            parse(
                """
                stages:
                  - id: a
                    actions: [{name: x, run: "curl ${target.id}"}]
                """
            )

    def test_target_placeholder_not_in_start(self):
        """Test that the start command cannot reference its own id."""
        with pytest.raises(PipelineDefinitionError, match="not available"):
            parse(
                """
                stages:
                  - id: a
                    target: {start: "run ${target.id}", stop: "stop"}
                    actions: [{name: x, run: "true"}]
                """
            )

    def test_target_cwd_placeholders_checked(self):
        """Test that the target working directory is validated like the start command."""
        with pytest.raises(PipelineDefinitionError, match="not available"):
            parse(
                """
                stages:
                  - id: a
                    target: {start: "serve", cwd: "/srv/${target.id}"}
                    actions: [{name: x, run: "true"}]
                """
            )
        with pytest.raises(PipelineDefinitionError, match="unknown placeholder namespace 'env'"):
            parse(
                """
                stages:
                  - id: a
                    target: {start: "serve", cwd: "${env.HOME}"}
                    actions: [{name: x, run: "true"}]
                """
            )

    def test_detached_target_requires_stop(self):
        """Test that detached targets must declare a stop command."""
        with pytest.raises(PipelineDefinitionError, match="stop"):
            parse(
                """
                stages:
                  - id: a
                    target: {mode: detached, start: "docker run -d app"}
                    actions: [{name: x, run: "true"}]
                """
            )

    def test_probe_requires_its_fields(self):
        """Test per-type probe validation."""
        with pytest.raises(PipelineDefinitionError, match="tcp probe needs 'port'"):
            parse(
                """
                stages:
                  - id: a
                    target: {start: "serve", probe: {type: tcp}}
                    actions: [{name: x, run: "true"}]
                """
            )

    def test_output_needs_one_source(self):
        """Test that outputs declare exactly one source."""
        with pytest.raises(PipelineDefinitionError, match="exactly one"):
            parse(
                """
                stages:
                  - id: a
                    actions:
                      - name: x
                        run: "true"
                        outputs: {report: {path: r.json, stdout: true}}
                """
            )

    def test_invalid_secret_name(self):
        """Test that secret names must be environment-variable names."""
        with pytest.raises(PipelineDefinitionError, match="invalid secret name"):
            parse(
                """
                stages:
                  - id: a
                    actions: [{name: x, run: "true", secrets: ["not-valid"]}]
                """
            )

    def test_duplicate_action_names(self):
        """Test that action names are unique within a stage."""
        with pytest.raises(PipelineDefinitionError, match="duplicate action names"):
            parse(
                """
                stages:
                  - id: a
                    actions: [{name: x, run: "true"}, {name: x, run: "false"}]
                """
            )

    def test_graph_errors(self):
        """Test that graph validation runs at load time."""
        with pytest.raises(DuplicateStage):
            parse(
                """
                stages:
                  - {id: a, actions: [{name: x, run: "true"}]}
                  - {id: a, actions: [{name: x, run: "true"}]}
                """
            )
        with pytest.raises(UnknownDependency):
            parse("stages: [{id: a, needs: [zzz], actions: [{name: x, run: 'true'}]}]")
        with pytest.raises(CycleDetected):
            parse(
                """
                stages:
                  - {id: a, needs: [b], actions: [{name: x, run: "true"}]}
                  - {id: b, needs: [a], actions: [{name: x, run: "true"}]}
                """
            )
