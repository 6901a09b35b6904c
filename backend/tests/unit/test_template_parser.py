"""
Tests for TemplateParser.

Covers:
- Short-form intrinsic tags map to long forms
- Parameter binding: defaults, typed ids, allowed values, unknown/missing names
- Structural errors (bad YAML, missing Resources, resources without Type)
"""

import pytest

from rollout.template_parser import TemplateParser, TemplateParseError


MINIMAL = """
Parameters:
  ImageUrl:
    Type: String
  Port:
    Type: Number
    Default: 80
Resources:
  Logs:
    Type: AWS::Logs::LogGroup
    Properties:
      LogGroupName: !Sub /ecs/${AWS::StackName}
  Role:
    Type: AWS::IAM::Role
    Properties:
      Path: !Join ['/', ['', 'service', !Ref ImageUrl, '']]
      LogArn: !GetAtt Logs.Arn
"""


@pytest.mark.unit
class TestShortFormTags:

    def test_tags_become_long_form(self):
        template = TemplateParser().parse(MINIMAL, {'ImageUrl': 'nginx:1.25'})

        role = template.resources['Role']['Properties']
        assert template.resources['Logs']['Properties']['LogGroupName'] == {'Fn::Sub': '/ecs/${AWS::StackName}'}
        assert role['LogArn'] == {'Fn::GetAtt': ['Logs', 'Arn']}
        assert role['Path'] == {'Fn::Join': ['/', ['', 'service', {'Ref': 'ImageUrl'}, '']]}

    def test_getatt_without_attribute_is_rejected(self):
        body = MINIMAL.replace('!GetAtt Logs.Arn', '!GetAtt Logs')
        with pytest.raises(TemplateParseError, match="Resource.Attribute"):
            TemplateParser().parse(body, {'ImageUrl': 'nginx'})

    def test_unknown_tag_is_rejected(self):
        body = MINIMAL.replace('!GetAtt Logs.Arn', '!ImportValue shared-logs')
        with pytest.raises(TemplateParseError, match="Unsupported YAML tag"):
            TemplateParser().parse(body, {'ImageUrl': 'nginx'})


@pytest.mark.unit
class TestParameterBinding:

    def test_defaults_are_applied_and_values_stringified(self):
        template = TemplateParser().parse(MINIMAL, {'ImageUrl': 'nginx'})
        assert template.parameters == {'ImageUrl': 'nginx', 'Port': '80'}

    def test_missing_required_parameter(self):
        with pytest.raises(TemplateParseError, match="Missing required parameters: ImageUrl"):
            TemplateParser().parse(MINIMAL, {})

    def test_unknown_parameter(self):
        with pytest.raises(TemplateParseError, match="Unknown parameters: Replicas"):
            TemplateParser().parse(MINIMAL, {'ImageUrl': 'nginx', 'Replicas': 3})

    def test_number_parameter_must_be_numeric(self):
        with pytest.raises(TemplateParseError, match="must be a number"):
            TemplateParser().parse(MINIMAL, {'ImageUrl': 'nginx', 'Port': 'eighty'})

    def test_typed_ids_are_checked(self, template_body, base_parameters):
        params = dict(base_parameters, Vpc='net-123')
        with pytest.raises(TemplateParseError, match="AWS::EC2::VPC::Id"):
            TemplateParser().parse(template_body, params)

    def test_allowed_values(self):
        body = MINIMAL.replace("    Default: 80", "    Default: 80\n    AllowedValues: [80, 8080]")
        TemplateParser().parse(body, {'ImageUrl': 'nginx', 'Port': 8080})
        with pytest.raises(TemplateParseError, match="must be one of"):
            TemplateParser().parse(body, {'ImageUrl': 'nginx', 'Port': 9090})


@pytest.mark.unit
class TestStructure:

    def test_invalid_yaml(self):
        with pytest.raises(TemplateParseError, match="Invalid YAML"):
            TemplateParser().parse("Resources: [unclosed", {})

    def test_template_must_be_a_mapping(self):
        with pytest.raises(TemplateParseError, match="YAML object"):
            TemplateParser().parse("- just\n- a list\n", {})

    def test_resources_required(self):
        with pytest.raises(TemplateParseError, match="Missing 'Resources'"):
            TemplateParser().parse("Parameters: {}\n", {})

    def test_resource_needs_type(self):
        with pytest.raises(TemplateParseError, match="'Broken' is missing a 'Type'"):
            TemplateParser().parse("Resources:\n  Broken:\n    Properties: {}\n", {})

    def test_fixture_template_sections(self, template_body, base_parameters):
        template = TemplateParser().parse(template_body, base_parameters)

        assert template.transforms == ['AWS::CodeDeployBlueGreen']
        assert 'CodeDeployBlueGreenHook' in template.hooks
        assert template.resource_type('TaskSetBlue') == 'AWS::ECS::TaskSet'
        assert template.resource_type('TaskSetGreen') is None
        assert set(template.outputs) == {'ServiceURL', 'ServiceDomain'}
